import pytest

from recyclink.errors import ServiceError
from recyclink.services.storage import LocalObjectStore


async def test_put_writes_under_upload_root(objects):
    locator = await objects.put("listings/a/1-0.jpg", b"jpeg-bytes", "image/jpeg")

    assert (objects.root / "listings/a/1-0.jpg").read_bytes() == b"jpeg-bytes"
    assert locator == (objects.root / "listings/a/1-0.jpg").as_uri()
    assert objects.read_bytes("listings/a/1-0.jpg") == b"jpeg-bytes"


async def test_public_base_url_builds_locator(app_settings, tmp_path):
    public = app_settings.model_copy(update={"public_base_url": "https://cdn.example.test/media/"})
    store = LocalObjectStore(public, root=tmp_path / "public")

    locator = await store.put("/listings/a/1-0.jpg", b"x", "image/jpeg")

    assert locator == "https://cdn.example.test/media/listings/a/1-0.jpg"


async def test_paths_cannot_escape_root(objects):
    with pytest.raises(ServiceError):
        await objects.put("../outside.jpg", b"x", "image/jpeg")


async def test_delete_missing_object(objects):
    with pytest.raises(FileNotFoundError):
        await objects.delete("listings/nothing.jpg")
    with pytest.raises(FileNotFoundError):
        objects.read_bytes("listings/nothing.jpg")
