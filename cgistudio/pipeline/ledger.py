"""
Metered cost accounting for a single pipeline run.

Providers bill per attempted call, so every adapter charges its nominal
price inside `metered()`, which books the charge whether the call returned
or raised. The running total is written to the project once, together with
the terminal status, by `flush()`.

All amounts are millicents.
"""

import logging
from contextlib import contextmanager
from typing import Mapping, Optional

from .models import ProjectStatus

logger = logging.getLogger(__name__)

# ── Pricing (millicents per attempted call) ──────────────────────────────────
DEFAULT_PRICING: dict[str, int] = {
    "prompt_enhancement": 100,
    "image_composition": 3900,
    "video_prompt_analysis": 100,
    "video_generation": 13000,      # per 5 seconds of output
    "audio_augmentation": 3500,
}


class CostLedger:
    def __init__(self, pricing: Optional[Mapping[str, int]] = None, opening_balance: int = 0):
        self._pricing = dict(DEFAULT_PRICING if pricing is None else pricing)
        self._total = opening_balance
        self._entries: list[tuple[str, int]] = []
        self._flushed = False

    @property
    def total(self) -> int:
        return self._total

    @property
    def entries(self) -> list[tuple[str, int]]:
        return list(self._entries)

    @property
    def flushed(self) -> bool:
        return self._flushed

    def price_of(self, stage: str, units: int = 1) -> int:
        if stage not in self._pricing:
            raise KeyError(f"No price configured for stage '{stage}'")
        return self._pricing[stage] * units

    def charge(self, amount: int, stage: str = "adhoc"):
        """Add `amount` to the running total. No I/O."""
        if amount < 0:
            raise ValueError("Charges cannot be negative")
        self._total += amount
        self._entries.append((stage, amount))

    def charge_for(self, stage: str, units: int = 1) -> int:
        amount = self.price_of(stage, units)
        self.charge(amount, stage)
        return amount

    @contextmanager
    def metered(self, stage: str, units: int = 1):
        """Charge `stage` when the block exits, however it exits."""
        try:
            yield
        finally:
            amount = self.charge_for(stage, units)
            logger.debug(f"Charged {amount} millicents for {stage} (total {self._total})")

    async def flush(
        self,
        store,
        project_id: str,
        status: ProjectStatus,
        run_id: Optional[str] = None,
        **fields,
    ) -> bool:
        """Write total cost and terminal status in one update.

        Returns False when the write was rejected because `run_id` no longer
        owns the project.
        """
        if self._flushed:
            raise RuntimeError(f"Cost ledger for project {project_id} was already flushed")
        update = {**fields, "status": status.value, "actual_cost": self._total}
        applied = await store.update_project(project_id, update, run_id=run_id)
        self._flushed = True
        logger.info(
            f"[{project_id}] Final cost {self._total} millicents "
            f"({len(self._entries)} charged calls) → {status.value}"
        )
        return applied
