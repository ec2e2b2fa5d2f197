import asyncio
import base64
import json
from io import BytesIO

import httpx
import pytest
from PIL import Image

from cgistudio import metrics
from cgistudio.config import Settings
from cgistudio.errors import AudioAugmentationFailed, NoImageProduced
from cgistudio.pipeline.models import (
    ComposedImage,
    ContentType,
    Project,
    ProjectStatus,
    User,
    VideoDirection,
    VideoResult,
)
from cgistudio.pipeline.orchestrator import ProjectPipeline
from cgistudio.pipeline.project_store import InMemoryProjectStore


def png_bytes(color=(200, 30, 30), size=(8, 8)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def data_url(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode()}"


def gemini_text(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def gemini_image(data: bytes, mime: str = "image/png") -> dict:
    return {
        "candidates": [{
            "content": {"parts": [
                {"text": "Here is your composition."},
                {"inlineData": {"mimeType": mime, "data": base64.b64encode(data).decode()}},
            ]}
        }]
    }


def mock_http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def request_json(request: httpx.Request) -> dict:
    return json.loads(request.content or b"{}")


class SleepRecorder:
    """Stands in for asyncio.sleep; remembers the delays instead of waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def no_sleep():
    return SleepRecorder()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        gemini_api_key="gemini-test-key",
        piapi_api_key="piapi-test-key",
        supabase_url="",
        supabase_service_role_key="",
        r2_account_id="",
        r2_access_key_id="",
        r2_secret_access_key="",
        upload_dir=str(tmp_path / "uploads"),
        public_base_url="https://studio.test",
    )


# ── Store ────────────────────────────────────────────────────────────────────

@pytest.fixture
def store():
    store = InMemoryProjectStore()
    store.add_user(User(id="user-1", email="maker@example.com", credits=10))
    store.add_user(User(id="user-2", email="other@example.com", credits=10))
    return store


async def add_project(store: InMemoryProjectStore, **overrides) -> Project:
    fields = {
        "id": "proj-1",
        "user_id": "user-1",
        "title": "Sofa in loft",
        "description": "make it bigger",
        "product_image_url": data_url(png_bytes()),
        "scene_image_url": data_url(png_bytes((20, 20, 200))),
        "content_type": ContentType.IMAGE,
        "status": ProjectStatus.PENDING,
    }
    fields.update(overrides)
    return await store.create_project(Project(**fields))


# ── Stage fakes ──────────────────────────────────────────────────────────────

class FakeEnhancer:
    def __init__(self, prompt="Place the sofa by the window."):
        self.prompt = prompt
        self.calls = 0

    async def enhance(self, product_ref, scene_ref, user_text, content_type, ledger):
        self.calls += 1
        with ledger.metered("prompt_enhancement"):
            return self.prompt


class FakeComposer:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = 0

    async def compose(self, product_ref, scene_ref, prompt, ledger):
        self.calls += 1
        with ledger.metered("image_composition"):
            if self.fail:
                raise NoImageProduced("No image data found in Gemini response (parts: ['text'])")
            return ComposedImage(image_bytes=png_bytes(), mime_type="image/png")


class FakeDirector:
    async def direct(self, image, image_prompt, duration, include_audio, user_text, ledger):
        with ledger.metered("video_prompt_analysis"):
            return VideoDirection(
                prompt=f"Slow push-in. {image_prompt}",
                audio_prompt="Soft room tone" if include_audio else None,
            )


class FakeVideo:
    """Image-to-video fake. Set `block` to hold the run inside the stage."""

    def __init__(self, task_id="vid-1", url="https://cdn.test/vid-1.mp4", block=False):
        self.task_id = task_id
        self.url = url
        self.block = block
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.generated = 0
        self.resumed = []

    async def generate(self, source_image_ref, prompt, duration, ledger, on_task_created=None):
        self.generated += 1
        with ledger.metered("video_generation", units=max(1, duration // 5)):
            if on_task_created is not None:
                await on_task_created(self.task_id)
            self.started.set()
            if self.block:
                await self.release.wait()
            return VideoResult(video_url=self.url, task_id=self.task_id)

    async def resume(self, task_id):
        self.resumed.append(task_id)
        return VideoResult(video_url=self.url, task_id=task_id)


class FakeAudio:
    def __init__(self, url="https://cdn.test/vid-1-sound.mp4", fail=False):
        self.url = url
        self.fail = fail
        self.added = 0
        self.resumed = []

    async def add_audio(self, video_task_id, prompt, ledger, on_task_created=None):
        self.added += 1
        with ledger.metered("audio_augmentation"):
            if on_task_created is not None:
                await on_task_created("snd-1")
            if self.fail:
                raise AudioAugmentationFailed("Kling sound failed: Task snd-1 failed: quota")
            return self.url

    async def resume(self, sound_task_id):
        self.resumed.append(sound_task_id)
        return self.url


class FakeArtifacts:
    def __init__(self):
        self.uploads = []

    async def upload(self, project_id, filename, data, content_type="image/png"):
        self.uploads.append((project_id, filename, content_type))
        return f"https://cdn.test/projects/{project_id}/{filename}"


@pytest.fixture
def fakes():
    return {
        "enhancer": FakeEnhancer(),
        "composer": FakeComposer(),
        "director": FakeDirector(),
        "video": FakeVideo(),
        "audio": FakeAudio(),
        "artifacts": FakeArtifacts(),
    }


@pytest.fixture
def pipeline(store, fakes):
    return ProjectPipeline(store=store, **fakes)


async def finish(pipeline: ProjectPipeline, project_id: str):
    """Wait for the project's background run to end, whatever the outcome."""
    task = pipeline.registry.get(project_id)
    if task is not None:
        await asyncio.gather(task, return_exceptions=True)
