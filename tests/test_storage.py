import threading

import httpx
import pytest

from cgistudio.errors import MediaResolutionError
from cgistudio.pipeline.storage import (
    LocalArtifactStore,
    MediaResolver,
    R2ArtifactStore,
    artifact_key,
    build_artifact_store,
    sniff_mime,
)

from conftest import data_url, mock_http, png_bytes


@pytest.fixture
def uploads(tmp_path):
    directory = tmp_path / "uploads"
    directory.mkdir()
    (directory / "sofa.png").write_bytes(png_bytes())
    return directory


def resolver_for(uploads, handler=None):
    http = mock_http(handler or (lambda r: httpx.Response(404)))
    return MediaResolver(str(uploads), http=http)


async def test_resolves_data_urls(uploads):
    payload = await resolver_for(uploads).resolve(data_url(b"\x00\x01", "video/mp4"))
    assert payload.data == b"\x00\x01"
    assert payload.is_video


async def test_resolves_uploads_by_url_and_by_name(uploads):
    resolver = resolver_for(uploads)

    by_url = await resolver.resolve("/api/files/uploads/sofa.png")
    by_name = await resolver.resolve("sofa.png")

    assert by_url.data == by_name.data == png_bytes()
    assert by_url.mime_type == "image/png"


async def test_upload_lookup_stays_inside_upload_dir(uploads, tmp_path):
    (tmp_path / "secret.png").write_bytes(b"nope")
    with pytest.raises(MediaResolutionError):
        await resolver_for(uploads).resolve("/api/files/uploads/../secret.png")


async def test_remote_fetch_sniffs_untyped_bytes(uploads):
    def handler(request):
        return httpx.Response(200, content=png_bytes(), headers={"Content-Type": "application/octet-stream"})

    payload = await resolver_for(uploads, handler).resolve("https://cdn.test/assets/blob")
    assert payload.mime_type == "image/png"


async def test_remote_fetch_errors(uploads):
    with pytest.raises(MediaResolutionError, match="HTTP 404"):
        await resolver_for(uploads).resolve("https://cdn.test/missing.jpg")
    with pytest.raises(MediaResolutionError):
        await resolver_for(uploads).resolve("")


def test_sniff_mime_falls_back_for_non_images():
    assert sniff_mime(png_bytes()) == "image/png"
    assert sniff_mime(b"plain text", fallback="image/jpeg") == "image/jpeg"


async def test_local_artifact_store_round_trips_through_resolver(uploads):
    store = LocalArtifactStore(str(uploads), "https://studio.test/")

    url = await store.upload("proj-1", "composed.png", png_bytes((5, 5, 5)), "image/png")

    assert url == "https://studio.test/api/files/uploads/proj-1-composed.png"
    payload = await resolver_for(uploads).resolve("/api/files/uploads/proj-1-composed.png")
    assert payload.data == png_bytes((5, 5, 5))


def test_artifact_store_selection(settings):
    assert isinstance(build_artifact_store(settings), LocalArtifactStore)
    r2 = settings.model_copy(update={
        "r2_account_id": "acct", "r2_access_key_id": "id", "r2_secret_access_key": "secret",
    })
    assert isinstance(build_artifact_store(r2), R2ArtifactStore)
    assert artifact_key("p", "composed.png") == "projects/p/composed.png"


async def test_r2_upload_runs_off_the_event_loop_thread(settings):
    class FakeS3:
        def __init__(self):
            self.calls = []

        def put_object(self, **kwargs):
            self.calls.append({**kwargs, "thread": threading.get_ident()})

    r2 = settings.model_copy(update={
        "r2_account_id": "acct", "r2_access_key_id": "id", "r2_secret_access_key": "secret",
        "r2_bucket_name": "assets", "r2_public_url": "https://media.test/",
    })
    store = R2ArtifactStore(r2)
    store._client = s3 = FakeS3()

    url = await store.upload("proj-1", "composed.png", b"png-bytes", "image/png")

    assert url == "https://media.test/projects/proj-1/composed.png"
    call = s3.calls[0]
    assert call["Bucket"] == "assets"
    assert call["Key"] == "projects/proj-1/composed.png"
    assert call["ContentType"] == "image/png"
    assert call["thread"] != threading.get_ident()
