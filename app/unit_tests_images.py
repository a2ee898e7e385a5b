import io

import pytest
from PIL import Image

import app_config
import models_sqlalchemy as models
from app_errors import InfrastructureException, ValidationException
from conftest import FakeSupabase, create_property, create_property_dict, make_image_bytes
from image_pipeline import ImagePipeline, fit_size, load_image, render_variant
from storage_adapter import ObjectStorage, path_from_public_url, paths_from_public_urls


def _size(data):
    with Image.open(io.BytesIO(data)) as image:
        assert image.format == "WEBP"
        return image.size


# ---------- PIPELINE ----------

def test_fit_size_never_enlarges():
    assert fit_size((2000, 1500), (1920, 1080)) == (1920, 1080)
    assert fit_size((400, 300), (800, 600)) == (400, 300)
    assert fit_size((400, 300), (1920, 1080)) == (400, 225)
    assert fit_size((400, 300), (300, 300)) == (300, 300)


def test_variants_from_large_source():
    image = load_image(make_image_bytes(2400, 1800))
    assert _size(render_variant(image, 300, 300)) == (300, 300)
    assert _size(render_variant(image, 800, 600)) == (800, 600)
    assert _size(render_variant(image, 1920, 1080)) == (1920, 1080)


def test_palette_and_jpeg_inputs_are_accepted():
    assert load_image(make_image_bytes(64, 64, fmt="JPEG")).mode == "RGB"
    buffer = io.BytesIO()
    Image.new("P", (32, 32)).save(buffer, format="GIF")
    assert load_image(buffer.getvalue()).mode in ("RGB", "RGBA")


def test_invalid_bytes_raise_validation_error():
    with pytest.raises(ValidationException):
        load_image(b"definitely not an image")


def test_upload_and_optimize_paths(storage, supabase):
    urls = ImagePipeline(storage).upload_and_optimize(make_image_bytes(), "prop-1")
    assert set(urls) == {"thumbnail", "medium", "large"}
    paths = sorted(path for _, path in supabase.objects)
    assert len(paths) == 3
    assert all(p.startswith("properties/prop-1/") and p.endswith(".webp") for p in paths)
    assert {p.rsplit("-", 1)[1] for p in paths} == {"thumb.webp", "medium.webp", "large.webp"}
    assert {bucket for bucket, _ in supabase.objects} == {app_config.PROPERTY_IMAGES_BUCKET}


def test_storage_failure_is_infrastructure_error():
    pipeline = ImagePipeline(ObjectStorage(FakeSupabase(fail=True)))
    with pytest.raises(InfrastructureException):
        pipeline.upload_and_optimize(make_image_bytes(), "prop-1")


def test_failed_variant_upload_removes_stored_variants():
    supabase = FakeSupabase(fail_after=1)
    pipeline = ImagePipeline(ObjectStorage(supabase))
    with pytest.raises(InfrastructureException):
        pipeline.upload_and_optimize(make_image_bytes(), "prop-1")
    assert supabase.objects == {}
    [(bucket, path)] = supabase.removed
    assert bucket == app_config.PROPERTY_IMAGES_BUCKET
    assert path.startswith("properties/prop-1/") and path.endswith("-thumb.webp")


@pytest.mark.parametrize("width, height", [(40, 40), (100, 100)])
def test_oversized_pixel_count_is_rejected(monkeypatch, width, height):
    # 40x40 trips the bomb warning, 100x100 the hard error
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
    with pytest.raises(ValidationException, match="too large"):
        load_image(make_image_bytes(width, height))


def test_public_url_paths():
    url = "https://project.supabase.co/storage/v1/object/public/property-images/properties/p/1-thumb.webp"
    assert path_from_public_url(url, "property-images") == "properties/p/1-thumb.webp"
    assert path_from_public_url(url, "message-files") is None
    assert paths_from_public_urls([url, "https://elsewhere.example.com/x.png"], "property-images") == [
        "properties/p/1-thumb.webp"
    ]


# ---------- API ----------

def test_property_with_two_images_has_six_urls(client, owner):
    prop = create_property(client, owner["headers"], images=[make_image_bytes(), make_image_bytes(640, 480)])
    assert len(prop["image_urls"]) == 6
    assert all(url.endswith(".webp") for url in prop["image_urls"])


def test_property_with_broken_image_leaves_nothing_behind(client, owner, db_session):
    files = [("images", ("broken.png", b"not really a png", "image/png"))]
    r = client.post("/api/properties", data=create_property_dict(), files=files, headers=owner["headers"])
    assert r.status_code == 400
    assert db_session.query(models.Property).count() == 0


def test_property_with_failing_storage_leaves_no_variants(client, owner, supabase, db_session):
    supabase.fail_after = 1
    files = [("images", ("room.png", make_image_bytes(), "image/png"))]
    r = client.post("/api/properties", data=create_property_dict(), files=files, headers=owner["headers"])
    assert r.status_code == 500
    assert supabase.objects == {}
    assert db_session.query(models.Property).count() == 0


def test_image_upload_rejects_oversized_image(client, guest, monkeypatch):
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
    r = client.post(
        "/api/images/upload",
        files={"image": ("huge.png", make_image_bytes(100, 100), "image/png")},
        headers=guest["headers"],
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"


def test_property_rejects_non_image_upload(client, owner):
    files = [("images", ("notes.txt", b"hello", "text/plain"))]
    r = client.post("/api/properties", data=create_property_dict(), files=files, headers=owner["headers"])
    assert r.status_code == 400
    assert "not an image" in r.json()["error"]["message"]


def test_image_upload_endpoint(client, guest):
    r = client.post(
        "/api/images/upload",
        files={"image": ("room.jpg", make_image_bytes(fmt="JPEG"), "image/jpeg")},
        data={"propertyId": "prop-9"},
        headers=guest["headers"],
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert set(data) == {"thumbnail", "medium", "large"}
    assert "/properties/prop-9/" in data["thumbnail"]


def test_image_upload_defaults_to_temp_folder(client, guest):
    r = client.post(
        "/api/images/upload",
        files={"image": ("room.png", make_image_bytes(), "image/png")},
        headers=guest["headers"],
    )
    assert "/properties/temp/" in r.json()["data"]["large"]


def test_image_upload_requires_auth(client):
    r = client.post("/api/images/upload", files={"image": ("room.png", make_image_bytes(), "image/png")})
    assert r.status_code == 401


def test_image_upload_storage_failure(client, guest, supabase):
    supabase.fail = True
    r = client.post(
        "/api/images/upload",
        files={"image": ("room.png", make_image_bytes(), "image/png")},
        headers=guest["headers"],
    )
    assert r.status_code == 500
    assert r.json()["error"]["code"] == "INFRASTRUCTURE_ERROR"


def test_optimize_returns_url_unchanged(client):
    url = "https://project.supabase.co/storage/v1/object/public/property-images/a.webp"
    r = client.get("/api/images/optimize", params={"url": url, "width": 300, "format": "webp"})
    assert r.status_code == 200
    assert r.json()["data"]["url"] == url
