import httpx
import pytest

from cgistudio.errors import (
    AudioAugmentationFailed,
    ConfigurationError,
    MediaResolutionError,
    VideoGenerationFailed,
    VideoUrlMissing,
)
from cgistudio.longpoll import LongPollClient
from cgistudio.pipeline.animate import VideoGenerator, billing_units, extract_video_url
from cgistudio.pipeline.ledger import CostLedger
from cgistudio.pipeline.sound import AudioAugmenter

from conftest import mock_http, request_json

IMAGE_URL = "https://cdn.test/projects/p1/composed.png"


class FakePiAPI:
    """Minimal PiAPI task endpoint: POST /task creates, GET /task/{id} reports."""

    def __init__(self, finals=None, pending_polls=1, submit_status=200):
        self.finals = finals or {}
        self.pending_polls = pending_polls
        self.submit_status = submit_status
        self.created = []
        self.polls = []
        self.events = []
        self._counter = 0

    def __call__(self, request: httpx.Request):
        if request.method == "POST":
            if self.submit_status != 200:
                return httpx.Response(self.submit_status, json={"message": "quota exceeded"})
            body = request_json(request)
            self._counter += 1
            task_id = f"{body['task_type']}-{self._counter}"
            self.created.append((task_id, body))
            self.events.append(("submit", task_id))
            return httpx.Response(200, json={"code": 200, "data": {"task_id": task_id, "status": "pending"}})

        task_id = request.url.path.rsplit("/", 1)[-1]
        self.polls.append(task_id)
        self.events.append(("poll", task_id))
        if self.polls.count(task_id) <= self.pending_polls:
            return httpx.Response(200, json={"code": 200, "data": {"task_id": task_id, "status": "processing"}})
        return httpx.Response(200, json={"code": 200, "data": self.finals.get(task_id, {"status": "completed"})})


def piapi_client(api, no_sleep) -> LongPollClient:
    return LongPollClient("https://api.piapi.test/api/v1", {"X-API-Key": "k"}, http=mock_http(api), sleep=no_sleep)


def completed_with(url):
    return {"status": "completed", "output": {"works": [{"video": {"resource_without_watermark": url}}]}}


# ── Video ────────────────────────────────────────────────────────────────────

async def test_generate_checkpoints_before_polling(no_sleep):
    api = FakePiAPI(finals={"video_generation-1": completed_with("https://v.test/clean.mp4")})
    generator = VideoGenerator(piapi_client(api, no_sleep), poll_interval=10, max_poll_attempts=5)
    ledger = CostLedger()

    async def on_task_created(task_id):
        api.events.append(("checkpoint", task_id))

    result = await generator.generate(IMAGE_URL, "Slow push-in", 10, ledger, on_task_created=on_task_created)

    assert result.video_url == "https://v.test/clean.mp4"
    assert result.task_id == "video_generation-1"
    assert api.events[:3] == [
        ("submit", "video_generation-1"),
        ("checkpoint", "video_generation-1"),
        ("poll", "video_generation-1"),
    ]
    assert ledger.total == 26000
    assert no_sleep.delays == [10, 10]

    payload = api.created[0][1]
    assert payload["model"] == "kling"
    assert payload["input"]["image_url"] == IMAGE_URL
    assert payload["input"]["duration"] == 10


async def test_generate_failure_is_charged(no_sleep):
    api = FakePiAPI(finals={"video_generation-1": {"status": "failed", "error": {"message": "image rejected"}}})
    generator = VideoGenerator(piapi_client(api, no_sleep), poll_interval=1, max_poll_attempts=5)
    ledger = CostLedger()

    with pytest.raises(VideoGenerationFailed, match="Kling reported failure: image rejected"):
        await generator.generate(IMAGE_URL, "p", 5, ledger)
    assert ledger.total == 13000


async def test_completed_task_without_url(no_sleep):
    api = FakePiAPI(finals={"video_generation-1": {"status": "completed", "output": {}}})
    generator = VideoGenerator(piapi_client(api, no_sleep), poll_interval=1, max_poll_attempts=5)

    with pytest.raises(VideoUrlMissing):
        await generator.generate(IMAGE_URL, "p", 5, CostLedger())


async def test_generate_needs_a_public_image_url(no_sleep):
    api = FakePiAPI()
    generator = VideoGenerator(piapi_client(api, no_sleep))
    ledger = CostLedger()

    with pytest.raises(MediaResolutionError):
        await generator.generate("data:image/png;base64,AAAA", "p", 5, ledger)
    assert api.created == []
    assert ledger.total == 0


async def test_generate_without_client_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        await VideoGenerator(None).generate(IMAGE_URL, "p", 5, CostLedger())


async def test_resume_polls_without_submitting(no_sleep):
    api = FakePiAPI(finals={"vid-existing": {"status": "completed", "output": {"video_url": "https://v.test/r.mp4"}}})
    generator = VideoGenerator(piapi_client(api, no_sleep), poll_interval=1, max_poll_attempts=5)

    result = await generator.resume("vid-existing")

    assert result.video_url == "https://v.test/r.mp4"
    assert api.created == []


@pytest.mark.parametrize("record, url", [
    ({"output": {"video_url": "a"}}, "a"),
    ({"output": {"works": [{"video": {"resource": "b"}}]}}, "b"),
    ({"output": {"video": "c"}}, "c"),
    ({"output": {"works": [{"video": {"resource_without_watermark": "d", "resource": "x"}}]}}, "d"),
    ({"videoUrl": "e"}, "e"),
    ({"works": [{"resource": {"resource": "f"}}]}, "f"),
    ({"output": {"works": []}}, None),
])
def test_extract_video_url_layouts(record, url):
    assert extract_video_url(record) == url


def test_billing_units():
    assert billing_units(5) == 1
    assert billing_units(10) == 2
    assert billing_units(7) == 2


# ── Sound ────────────────────────────────────────────────────────────────────

async def test_add_audio_keys_off_video_task(no_sleep):
    api = FakePiAPI(finals={"sound-1": completed_with("https://v.test/with-sound.mp4")})
    augmenter = AudioAugmenter(piapi_client(api, no_sleep), poll_interval=1, max_poll_attempts=5)
    ledger = CostLedger()
    checkpoints = []

    async def on_task_created(task_id):
        checkpoints.append(task_id)

    url = await augmenter.add_audio("vid-1", "Soft birdsong", ledger, on_task_created=on_task_created)

    assert url == "https://v.test/with-sound.mp4"
    assert checkpoints == ["sound-1"]
    assert ledger.total == 3500
    payload = api.created[0][1]
    assert payload["task_type"] == "sound"
    assert payload["input"]["origin_task_id"] == "vid-1"
    assert "Soft birdsong" in payload["input"]["prompt"]


async def test_add_audio_submit_failure_is_charged_and_wrapped(no_sleep):
    api = FakePiAPI(submit_status=402)
    augmenter = AudioAugmenter(piapi_client(api, no_sleep))
    ledger = CostLedger()

    with pytest.raises(AudioAugmentationFailed, match="sound request failed"):
        await augmenter.add_audio("vid-1", "p", ledger)
    assert ledger.total == 3500


async def test_add_audio_poll_failure_is_wrapped(no_sleep):
    api = FakePiAPI(finals={"sound-1": {"status": "failed", "error": {"message": "no audio model"}}})
    augmenter = AudioAugmenter(piapi_client(api, no_sleep), poll_interval=1, max_poll_attempts=5)

    with pytest.raises(AudioAugmentationFailed, match="no audio model"):
        await augmenter.add_audio("vid-1", "p", CostLedger())


async def test_add_audio_without_client():
    with pytest.raises(AudioAugmentationFailed):
        await AudioAugmenter(None).add_audio("vid-1", "p", CostLedger())
