import base64

import pytest

from streamchat.domain.annotation.annotation_resolver import AnnotationResolver, content_type_for
from streamchat.domain.models.conversation_state import ResolvedArtifact
from tests.fakes import FakeArtifactSource, FakeStore


def _artifact(filename: str, url: str) -> ResolvedArtifact:
    return ResolvedArtifact(source_id="f1", filename=filename, url=url, content_type=content_type_for(filename))


def test_content_type_detection():
    assert content_type_for("chart.PNG") == "image/png"
    assert content_type_for("data.csv") == "text/csv"
    assert content_type_for("archive.tar.unknown") == "application/octet-stream"


def test_parse_annotation_kinds():
    container = AnnotationResolver.parse_annotation(
        {"type": "container_file_citation", "container_id": "cntr_1", "file_id": "cfile_1", "filename": "out.csv"}
    )
    assert container.kind == "container_file_citation"
    assert container.container_id == "cntr_1"

    stored = AnnotationResolver.parse_annotation({"type": "file_path", "file_id": "file_1"})
    assert stored.kind == "file_path"

    assert AnnotationResolver.parse_annotation({"type": "url_citation", "url": "https://example.com"}) is None
    assert AnnotationResolver.parse_annotation({"type": "container_file_citation", "file_id": "x"}) is None


def test_sandbox_path_is_replaced_with_url():
    text = "see sandbox:/mnt/data/out.csv"
    mappings = AnnotationResolver.build_mappings(text, [_artifact("out.csv", "https://files.example/U.csv")])

    assert AnnotationResolver.apply_mappings(text, mappings) == "see https://files.example/U.csv"


def test_markdown_link_to_sandbox_path_keeps_link_text():
    text = "Download [the report](sandbox:/mnt/data/report.pdf)."
    mappings = AnnotationResolver.build_mappings(text, [_artifact("report.pdf", "https://files.example/R.pdf")])

    assert AnnotationResolver.apply_mappings(text, mappings) == "Download [the report](https://files.example/R.pdf)."


def test_bare_filename_becomes_markup():
    text = "Here is chart.png and data.xlsx"
    mappings = AnnotationResolver.build_mappings(
        text,
        [_artifact("chart.png", "https://files.example/C.png"), _artifact("data.xlsx", "https://files.example/D.xlsx")],
    )

    result = AnnotationResolver.apply_mappings(text, mappings)

    assert result == (
        "Here is ![Generated image](https://files.example/C.png) "
        "and [Download file](https://files.example/D.xlsx)"
    )


def test_no_residual_reference_keys():
    text = "a sandbox:/mnt/data/x.csv b sandbox:/mnt/data/x.csv c y.png"
    artifacts = [_artifact("x.csv", "https://files.example/1.csv"), _artifact("y.png", "https://files.example/2.png")]

    mappings = AnnotationResolver.build_mappings(text, artifacts)
    result = AnnotationResolver.apply_mappings(text, mappings)

    assert mappings
    for mapping in mappings:
        assert mapping.reference_key not in result


def test_overlapping_keys_prefer_the_longest():
    text = "see sandbox:/mnt/data/a.csv"
    artifacts = [_artifact("a.csv", "https://files.example/A.csv")]
    mappings = AnnotationResolver.build_mappings(text, artifacts)
    mappings.append(mappings[0].model_copy(update={"reference_key": "a.csv", "replacement": "WRONG"}))

    assert AnnotationResolver.apply_mappings(text, mappings) == "see https://files.example/A.csv"


@pytest.mark.asyncio
async def test_resolve_container_file(make_context):
    source = FakeArtifactSource(container_files={"cfile_1": b"a,b\n1,2\n"})
    store = FakeStore()
    resolver = AnnotationResolver(source, store)
    reference = resolver.parse_annotation(
        {"type": "container_file_citation", "container_id": "cntr_1", "file_id": "cfile_1", "filename": "out.csv"}
    )

    artifact = await resolver.resolve(reference, make_context())

    assert artifact.filename == "out.csv"
    assert artifact.content_type == "text/csv"
    assert store.uploads[0]["filename"].endswith(".csv")
    assert store.uploads[0]["filename"] != "out.csv"
    assert artifact.url.startswith("https://files.example/thread-1/")


@pytest.mark.asyncio
async def test_resolve_stored_file_uses_original_name(make_context):
    source = FakeArtifactSource(files={"file_1": (b"%PDF", "summary.pdf")})
    resolver = AnnotationResolver(source, FakeStore())

    artifact = await resolver.resolve(resolver.parse_annotation({"type": "file_citation", "file_id": "file_1"}), make_context())

    assert artifact.filename == "summary.pdf"
    assert artifact.content_type == "application/pdf"


@pytest.mark.asyncio
async def test_failed_download_is_not_fatal(make_context):
    resolver = AnnotationResolver(FakeArtifactSource(), FakeStore())
    reference = resolver.parse_annotation(
        {"type": "container_file_citation", "container_id": "cntr_1", "file_id": "missing", "filename": "x.csv"}
    )

    assert await resolver.resolve(reference, make_context()) is None


@pytest.mark.asyncio
async def test_store_generated_image(make_context):
    store = FakeStore()
    resolver = AnnotationResolver(FakeArtifactSource(), store)

    artifact = await resolver.store_image(base64.b64encode(b"png-bytes").decode(), make_context(), "ig_1")

    assert artifact.is_image
    assert store.uploads[0]["data"] == b"png-bytes"
    assert store.uploads[0]["content_type"] == "image/png"
