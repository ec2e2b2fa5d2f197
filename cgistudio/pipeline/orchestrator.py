"""
ProjectPipeline — drives a project through the generation state machine.

  pending → processing → enhancing_prompt → generating_image
          → [generating_video] → completed / failed

Each run owns the project through a run token (`projects.run_id`), claimed
by compare-and-set when the run starts. Every write the run makes carries
the token; once another run has claimed the project, the old run stops
without writing anything else.

Runs are asyncio tasks kept in a RunRegistry, so an operator can cancel one
(it fails with "Cancelled by operator" and still records its cost).
"""

import time
import uuid
import logging
import asyncio
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Mapping, Optional

import httpx

from .. import metrics
from ..config import Settings
from ..errors import AudioAugmentationFailed, PipelineError, RunConflictError, RunSupersededError
from ..gemini import GeminiClient
from ..longpoll import Sleep, build_piapi_client
from .animate import VideoGenerator
from .compose import ImageComposer
from .direct import FALLBACK_AUDIO_PROMPT, VideoDirector
from .enhance import PromptEnhancer, fallback_prompt
from .intent import IntentExtractor
from .ledger import CostLedger
from .models import ACTIVE_STATUSES, ComposedImage, Project, ProjectStatus
from .project_store import ProjectStore
from .sound import AudioAugmenter
from .storage import ArtifactStore, MediaResolver, build_artifact_store

logger = logging.getLogger(__name__)

STAGE_LABELS = {
    "processing": "Pipeline",
    "prompt_enhancement": "Prompt enhancement",
    "image_composition": "Image composition",
    "video_prompt_analysis": "Video direction",
    "video_generation": "Video generation",
    "audio_augmentation": "Audio augmentation",
}

CANCELLED_MESSAGE = "Cancelled by operator"

_EXTENSIONS = {"image/png": ".png", "image/jpeg": ".jpg", "image/webp": ".webp"}


# ── Run registry ─────────────────────────────────────────────────────────────

class RunRegistry:
    """Live run tasks by project id (this process only)."""

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}
        self._started: set[str] = set()
        self._cancel_before_start: set[str] = set()

    def register(self, project_id: str, task: asyncio.Task):
        self._tasks[project_id] = task
        self._started.discard(project_id)
        self._cancel_before_start.discard(project_id)
        task.add_done_callback(lambda t: self._discard(project_id, t))
        metrics.set_gauge("runs.active", len(self._tasks))

    def _discard(self, project_id: str, task: asyncio.Task):
        if self._tasks.get(project_id) is task:
            del self._tasks[project_id]
            self._started.discard(project_id)
            self._cancel_before_start.discard(project_id)
            metrics.set_gauge("runs.active", len(self._tasks))

    def mark_started(self, project_id: str) -> bool:
        """Called first thing by a run. True if it was cancelled before it got here."""
        self._started.add(project_id)
        if project_id in self._cancel_before_start:
            self._cancel_before_start.discard(project_id)
            return True
        return False

    def get(self, project_id: str) -> Optional[asyncio.Task]:
        return self._tasks.get(project_id)

    def is_running(self, project_id: str) -> bool:
        task = self._tasks.get(project_id)
        return task is not None and not task.done()

    def cancel(self, project_id: str) -> bool:
        """Request cooperative cancellation. False if nothing is running."""
        task = self._tasks.get(project_id)
        if task is None or task.done():
            return False
        if project_id in self._started:
            task.cancel()
        else:
            # Task.cancel() before the first step would skip the run body entirely
            self._cancel_before_start.add(project_id)
        return True

    async def shutdown(self):
        tasks = [t for t in self._tasks.values() if not t.done()]
        for project_id in list(self._tasks):
            self.cancel(project_id)
        await asyncio.gather(*tasks, return_exceptions=True)


@dataclass
class _Run:
    project_id: str
    run_id: str
    ledger: CostLedger
    project: Optional[Project] = None      # set once loaded
    stage: str = "processing"


# ── Pipeline ─────────────────────────────────────────────────────────────────

class ProjectPipeline:
    """
    Usage:
        pipeline = ProjectPipeline.from_settings(settings, store)
        run_id = await pipeline.start(project_id)     # returns immediately
        pipeline.cancel(project_id)
        run_id = await pipeline.resume(project_id)
    """

    def __init__(
        self,
        store: ProjectStore,
        enhancer: PromptEnhancer,
        composer: ImageComposer,
        director: VideoDirector,
        video: VideoGenerator,
        audio: AudioAugmenter,
        artifacts: ArtifactStore,
        registry: Optional[RunRegistry] = None,
        pricing: Optional[Mapping[str, int]] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.store = store
        self.enhancer = enhancer
        self.composer = composer
        self.director = director
        self.video = video
        self.audio = audio
        self.artifacts = artifacts
        self.registry = registry or RunRegistry()
        self.pricing = pricing
        self._http = http

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: ProjectStore,
        http: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
        artifacts: Optional[ArtifactStore] = None,
    ) -> "ProjectPipeline":
        """Wire every adapter from one settings object and one HTTP client."""
        owned_http = None
        if http is None:
            http = owned_http = httpx.AsyncClient(timeout=settings.http_timeout, follow_redirects=True)

        gemini = GeminiClient(settings.gemini_api_key, settings.gemini_api_base, http=http, sleep=sleep)
        resolver = MediaResolver(settings.upload_dir, http=http)
        piapi = build_piapi_client(settings, http=http, sleep=sleep)
        intents = IntentExtractor()

        return cls(
            store=store,
            enhancer=PromptEnhancer(gemini, resolver, settings.gemini_text_model, intents),
            composer=ImageComposer(gemini, resolver, settings.gemini_image_model),
            director=VideoDirector(gemini, settings.gemini_text_model, intents),
            video=VideoGenerator(
                piapi,
                poll_interval=settings.video_poll_interval,
                max_poll_attempts=settings.video_max_poll_attempts,
                max_consecutive_transient=settings.max_consecutive_transient,
            ),
            audio=AudioAugmenter(
                piapi,
                poll_interval=settings.audio_poll_interval,
                max_poll_attempts=settings.audio_max_poll_attempts,
            ),
            artifacts=artifacts or build_artifact_store(settings),
            http=owned_http,
        )

    async def aclose(self):
        await self.registry.shutdown()
        if self._http is not None:
            await self._http.aclose()

    # ── Run control ──────────────────────────────────────────────────────

    async def start(self, project_id: str) -> str:
        """Claim a pending project and launch its run in the background."""
        if self.registry.is_running(project_id):
            raise RunConflictError(f"Project {project_id} already has an active run")

        run_id = uuid.uuid4().hex
        claimed = await self.store.claim_run(
            project_id,
            run_id,
            allowed_statuses=[ProjectStatus.PENDING],
            previous_run_id=None,
            fields={"status": ProjectStatus.PROCESSING.value, "progress": 10},
        )
        if not claimed:
            project = await self.store.get_project(project_id)
            if project is None:
                raise LookupError(f"Project {project_id} not found")
            raise RunConflictError(
                f"Project {project_id} is {project.status.value}; a new run can only start from pending"
            )

        logger.info(f"[{project_id}] Run {run_id} claimed project")
        self._launch(project_id, run_id, resume=False)
        return run_id

    async def resume(self, project_id: str) -> str:
        """Restart a failed or orphaned run, reusing remote tasks when possible."""
        project = await self.store.get_project(project_id)
        if project is None:
            raise LookupError(f"Project {project_id} not found")
        if self.registry.is_running(project_id):
            raise RunConflictError(f"Project {project_id} already has an active run")
        if project.status == ProjectStatus.PENDING:
            return await self.start(project_id)
        if project.status == ProjectStatus.COMPLETED:
            raise RunConflictError(f"Project {project_id} is already completed")

        run_id = uuid.uuid4().hex
        claimed = await self.store.claim_run(
            project_id,
            run_id,
            allowed_statuses=[ProjectStatus.FAILED, *ACTIVE_STATUSES],
            previous_run_id=project.run_id,
            fields={"status": ProjectStatus.PROCESSING.value, "progress": 10, "error_message": None},
        )
        if not claimed:
            raise RunConflictError(f"Project {project_id} was claimed by another run")

        logger.info(f"[{project_id}] Run {run_id} resuming project (was {project.status.value})")
        self._launch(project_id, run_id, resume=True)
        return run_id

    def cancel(self, project_id: str) -> bool:
        cancelled = self.registry.cancel(project_id)
        if cancelled:
            logger.info(f"[{project_id}] Cancellation requested")
        return cancelled

    def is_running(self, project_id: str) -> bool:
        return self.registry.is_running(project_id)

    def _launch(self, project_id: str, run_id: str, resume: bool):
        task = asyncio.create_task(self.run(project_id, run_id, resume=resume), name=f"project-run-{project_id}")
        self.registry.register(project_id, task)

    # ── The run ──────────────────────────────────────────────────────────

    async def run(self, project_id: str, run_id: str, resume: bool = False):
        """Execute one run to a terminal state. Never raises (except cancellation)."""
        run = _Run(project_id=project_id, run_id=run_id, ledger=CostLedger(self.pricing))

        try:
            if self.registry.mark_started(project_id):
                raise asyncio.CancelledError()

            project = await self.store.get_project(project_id)
            if project is None:
                logger.error(f"[{project_id}] Project vanished before run {run_id} started")
                return
            run.project = project
            run.ledger = CostLedger(self.pricing, opening_balance=project.actual_cost)

            if resume and project.is_video and project.output_image_url and project.kling_video_task_id:
                await self._resume_video(run)
            else:
                await self._run_from_start(run)
            metrics.inc_counter("runs.completed")
            logger.info(f"[{project_id}] Run complete (cost {run.ledger.total} millicents)")

        except RunSupersededError as e:
            metrics.inc_counter("runs.superseded")
            logger.warning(f"[{project_id}] Run {run_id} stopped: {e}")

        except asyncio.CancelledError:
            metrics.inc_counter("runs.cancelled")
            logger.warning(f"[{project_id}] Run cancelled during {run.stage}")
            await self._fail(run, CANCELLED_MESSAGE)
            raise

        except Exception as e:
            metrics.inc_counter("runs.failed")
            logger.error(f"[{project_id}] Pipeline failed during {run.stage}: {e}", exc_info=True)
            await self._fail(run, self._error_message(run, e))

    async def _run_from_start(self, run: _Run):
        project = run.project

        # ── Stage 1: Prompt enhancement ──────────────────────────────
        await self._transition(run, ProjectStatus.ENHANCING_PROMPT, 25)
        prompt = ""
        try:
            with self._stage(run, "prompt_enhancement"):
                prompt = await self.enhancer.enhance(
                    project.product_image_url,
                    project.scene_ref,
                    project.description,
                    project.content_type,
                    run.ledger,
                )
        except RunSupersededError:
            raise
        except Exception as e:
            logger.warning(f"[{project.id}] Prompt enhancement raised, using fallback: {e}")
        if not prompt or not prompt.strip():
            prompt = fallback_prompt(project.description)

        # ── Stage 2: Image composition ───────────────────────────────
        await self._transition(run, ProjectStatus.GENERATING_IMAGE, 50, enhanced_prompt=prompt)
        await self._transition(run, progress=60)
        with self._stage(run, "image_composition"):
            image = await self.composer.compose(project.product_image_url, project.scene_ref, prompt, run.ledger)
            image_url = await self.artifacts.upload(
                project.id, f"composed{_EXTENSIONS.get(image.mime_type, '.png')}", image.image_bytes, image.mime_type
            )
        await self._transition(run, progress=75, output_image_url=image_url)

        if not project.is_video:
            await self._complete(run)
            return

        # ── Stage 3: Video ───────────────────────────────────────────
        await self._generate_video(run, image, image_url, prompt)

    async def _generate_video(self, run: _Run, image: ComposedImage, image_url: str, image_prompt: str):
        project = run.project

        await self._transition(run, ProjectStatus.GENERATING_VIDEO, 78)
        with self._stage(run, "video_prompt_analysis"):
            direction = await self.director.direct(
                image,
                image_prompt,
                project.video_duration_seconds,
                project.include_audio,
                project.description,
                run.ledger,
            )

        await self._transition(run, progress=80)
        with self._stage(run, "video_generation"):
            video = await self.video.generate(
                image_url,
                direction.prompt,
                project.video_duration_seconds,
                run.ledger,
                on_task_created=lambda task_id: self._checkpoint(run, kling_video_task_id=task_id),
            )
        await self._transition(run, progress=95)

        output_url = video.video_url
        if project.include_audio:
            output_url = await self._add_audio(
                run, video.task_id, video.video_url, direction.audio_prompt or FALLBACK_AUDIO_PROMPT
            )
        await self._complete(run, output_video_url=output_url)

    async def _resume_video(self, run: _Run):
        """Re-poll the recorded video (and sound) task instead of paying again."""
        project = run.project
        logger.info(f"[{project.id}] Resuming from video task {project.kling_video_task_id}")

        await self._transition(run, ProjectStatus.GENERATING_VIDEO, 80)
        with self._stage(run, "video_generation"):
            video = await self.video.resume(project.kling_video_task_id)
        await self._transition(run, progress=95)

        output_url = video.video_url
        if project.include_audio:
            output_url = await self._add_audio(
                run, video.task_id, video.video_url, FALLBACK_AUDIO_PROMPT,
                sound_task_id=project.kling_sound_task_id,
            )
        await self._complete(run, output_video_url=output_url)

    async def _add_audio(
        self,
        run: _Run,
        video_task_id: str,
        silent_url: str,
        prompt: str,
        sound_task_id: Optional[str] = None,
    ) -> str:
        """Video URL with sound, or the silent one if audio fails."""
        try:
            with self._stage(run, "audio_augmentation"):
                if sound_task_id:
                    return await self.audio.resume(sound_task_id)
                return await self.audio.add_audio(
                    video_task_id,
                    prompt,
                    run.ledger,
                    on_task_created=lambda task_id: self._checkpoint(run, kling_sound_task_id=task_id),
                )
        except AudioAugmentationFailed as e:
            logger.warning(f"[{run.project_id}] Audio failed, keeping silent video: {e}")
            return silent_url

    # ── State writes ─────────────────────────────────────────────────────

    async def _transition(self, run: _Run, status: Optional[ProjectStatus] = None, progress: Optional[int] = None, **fields):
        update = dict(fields)
        if status is not None:
            update["status"] = status.value
        if progress is not None:
            update["progress"] = progress

        applied = await self.store.update_project(run.project_id, update, run_id=run.run_id)
        if not applied:
            raise RunSupersededError(f"Run {run.run_id} no longer owns project {run.project_id}")

        label = status.value if status else run.stage
        logger.info(f"[{run.project_id}] {label} ({progress if progress is not None else '-'}%)")

    async def _checkpoint(self, run: _Run, **fields):
        """Persist a remote task id before polling. Best effort."""
        try:
            applied = await self.store.update_project(run.project_id, fields, run_id=run.run_id)
        except Exception as e:
            logger.warning(f"[{run.project_id}] Checkpoint write failed, continuing: {e}")
            return
        if not applied:
            raise RunSupersededError(f"Run {run.run_id} no longer owns project {run.project_id}")
        logger.info(f"[{run.project_id}] Checkpoint saved: {fields}")

    async def _complete(self, run: _Run, **fields):
        applied = await run.ledger.flush(
            self.store, run.project_id, ProjectStatus.COMPLETED, run_id=run.run_id, progress=100, **fields
        )
        if not applied:
            raise RunSupersededError(f"Run {run.run_id} no longer owns project {run.project_id}")
        metrics.record_spend(run.ledger.entries)

    async def _fail(self, run: _Run, message: str):
        if run.ledger.flushed:
            return
        try:
            if run.project is None:
                # never loaded, so nothing was charged and the stored cost stays
                await self.store.update_project(
                    run.project_id,
                    {"status": ProjectStatus.FAILED.value, "error_message": message},
                    run_id=run.run_id,
                )
                return
            await run.ledger.flush(
                self.store, run.project_id, ProjectStatus.FAILED, run_id=run.run_id, error_message=message
            )
            metrics.record_spend(run.ledger.entries)
        except Exception as e:
            logger.error(f"[{run.project_id}] Could not record failure: {e}", exc_info=True)

    # ── Helpers ──────────────────────────────────────────────────────────

    @contextmanager
    def _stage(self, run: _Run, name: str):
        run.stage = name
        metrics.inc_counter(f"stage.{name}.attempts")
        started = time.monotonic()
        try:
            yield
        except (RunSupersededError, asyncio.CancelledError):
            raise
        except Exception as e:
            metrics.inc_counter(f"stage.{name}.failures")
            metrics.record_error(name, type(e).__name__, str(e), run.project_id)
            raise
        finally:
            metrics.record_latency(name, time.monotonic() - started)

    @staticmethod
    def _error_message(run: _Run, exc: Exception) -> str:
        stage = exc.stage if isinstance(exc, PipelineError) and exc.stage else run.stage
        detail = exc.message if isinstance(exc, PipelineError) else str(exc) or type(exc).__name__
        return f"{STAGE_LABELS.get(stage, stage)} failed: {detail}"
