import asyncio

import pytest

from conftest import unit
from lostfound.errors import BlobStoreError, EmbeddingError, IngestError, StoreError, ValidationError
from lostfound.ingestion import BackgroundIngestor
from lostfound.models import StatusState
from lostfound.vector_store import ALL

IMAGE = b"\x89PNG fake image bytes"


def blob_names(blob_store):
    return sorted(p.name for p in blob_store.root.iterdir())


def ingest(pipeline, submitter, /, **overrides):
    kwargs = dict(title="blue backpack", description="with a laptop sleeve", location="library",
                  image_bytes=IMAGE, submitter=submitter, filename="my photo.png",
                  content_type="image/png", item_id="item1")
    kwargs.update(overrides)
    return pipeline.ingest(**kwargs)


def test_successful_ingest(pipeline, vector_store, blob_store, tracker, alice):
    record = ingest(pipeline, alice)

    assert record.id == "item1"
    assert record.submitter_identity == "alice@example.com"
    assert record.image_url.endswith("/images/item1-my_photo.png")
    assert blob_names(blob_store) == ["item1-my_photo.png"]

    vector, metadata = vector_store.get("item1")
    assert metadata["title"] == "blue backpack"
    assert metadata["location"] == "library"
    assert metadata["image_url"] == record.image_url

    status = tracker.peek("item1")
    assert status.state == StatusState.INDEXED


def test_generates_ids(pipeline, alice):
    first = ingest(pipeline, alice, item_id=None)
    second = ingest(pipeline, alice, item_id=None)
    assert first.id != second.id


@pytest.mark.parametrize("fault", ["blob", "embedding", "store"])
def test_failure_leaves_nothing_behind(fault, pipeline, embedder, vector_store, blob_store, tracker, alice):
    if fault == "blob":
        blob_store.fail_put = True
    elif fault == "embedding":
        embedder.fail = True
    else:
        vector_store.fail_insert = True

    with pytest.raises(IngestError) as excinfo:
        ingest(pipeline, alice)

    expected = {"blob": BlobStoreError, "embedding": EmbeddingError, "store": StoreError}[fault]
    assert isinstance(excinfo.value.cause, expected)
    assert excinfo.value.status_code == 500
    assert not vector_store.contains("item1")
    assert blob_names(blob_store) == []
    assert vector_store.search(unit(0), top_k=ALL) == []

    status = tracker.peek("item1")
    assert status.state == StatusState.FAILED
    assert status.message


def test_blob_failure_skips_embedding(pipeline, embedder, blob_store, alice):
    blob_store.fail_put = True
    with pytest.raises(IngestError):
        ingest(pipeline, alice)
    assert embedder.calls == []


def test_unexpected_embedder_exception_is_wrapped(pipeline, embedder, blob_store, alice):
    def explode(raw_bytes, mime=None):
        raise RuntimeError("CUDA out of memory")
    embedder.embed_image = explode

    with pytest.raises(IngestError) as excinfo:
        ingest(pipeline, alice)
    assert isinstance(excinfo.value.cause, EmbeddingError)
    assert "CUDA out of memory" in excinfo.value.message
    assert blob_names(blob_store) == []


def test_failed_cleanup_is_reported(pipeline, embedder, blob_store, alice):
    embedder.fail = True
    blob_store.fail_delete = True

    with pytest.raises(IngestError) as excinfo:
        ingest(pipeline, alice)
    assert "cleanup incomplete" in excinfo.value.message
    assert isinstance(excinfo.value.cause, EmbeddingError)


@pytest.mark.parametrize("overrides", [
    {"title": "  "},
    {"location": ""},
    {"image_bytes": b""},
    {"submitter": None},
    {"content_type": "application/pdf"},
    {"image_bytes": b"x" * 2048},
    {"description": "d" * 5000},
])
def test_validation_errors_have_no_side_effects(overrides, pipeline, embedder, vector_store, blob_store, alice):
    with pytest.raises(IngestError) as excinfo:
        ingest(pipeline, alice, **overrides)
    assert isinstance(excinfo.value.cause, ValidationError)
    assert excinfo.value.status_code == 400
    assert blob_names(blob_store) == []
    assert embedder.calls == []
    assert len(vector_store) == 0


def test_text_fields_are_trimmed(pipeline, vector_store, alice):
    ingest(pipeline, alice, title="  blue backpack ", location=" library\n")
    _, metadata = vector_store.get("item1")
    assert metadata["title"] == "blue backpack"
    assert metadata["location"] == "library"


def test_status_survives_pruning_mid_flight(pipeline, tracker, alice):
    original_put = pipeline.blob_store.put

    def put_and_prune(name, data, content_type=None):
        tracker.discard("item1")
        return original_put(name, data, content_type)
    pipeline.blob_store.put = put_and_prune

    record = ingest(pipeline, alice)
    assert record.id == "item1"
    assert pipeline.vector_store.contains("item1")


def test_background_ingestion_reaches_indexed(pipeline, tracker, vector_store, alice):
    async def runner():
        ingestor = BackgroundIngestor(pipeline)
        item_id = ingestor.submit("blue backpack", "", "library", IMAGE, alice,
                                  filename="bag.jpg", content_type="image/jpeg")
        assert tracker.peek(item_id).state in (StatusState.PENDING, StatusState.PROCESSING)

        await ingestor.drain()
        assert tracker.peek(item_id).state == StatusState.INDEXED
        assert vector_store.contains(item_id)
        assert ingestor.pending == 0

    asyncio.run(runner())


def test_background_ingestion_failure_is_tracked(pipeline, embedder, tracker, vector_store, blob_store, alice):
    embedder.fail = True

    async def runner():
        ingestor = BackgroundIngestor(pipeline)
        item_id = ingestor.submit("blue backpack", "", "library", IMAGE, alice)
        await ingestor.drain()

        status = tracker.peek(item_id)
        assert status.state == StatusState.FAILED
        assert not vector_store.contains(item_id)
        assert blob_names(blob_store) == []

    asyncio.run(runner())


def test_background_submit_validates_synchronously(pipeline, tracker, alice):
    async def runner():
        ingestor = BackgroundIngestor(pipeline)
        with pytest.raises(ValidationError):
            ingestor.submit("", "", "library", IMAGE, alice)
        assert len(tracker) == 0
        assert ingestor.pending == 0

    asyncio.run(runner())

