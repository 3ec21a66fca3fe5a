from pathlib import Path

import pytest

from errors import RenderPrepError
from request_models import ImageRequest, NotifyRequest
from scratch import ScratchFiles
from service_config import DEFAULT_TEMPLATE_DIR
from star_templates import TemplateRegistry, materialize, starlark_literal


@pytest.fixture
def registry():
    return TemplateRegistry(DEFAULT_TEMPLATE_DIR)


@pytest.fixture
def icon_registry(tmp_path):
    template_dir = tmp_path / "templates"
    (template_dir / "icons").mkdir(parents=True)
    (template_dir / "notify.star").write_text("TEXT = {{ text|starlark }}\nICON = {{ icon_data|starlark }}\n")
    (template_dir / "icons" / "bell.png").write_bytes(b"PNGDATA")
    return TemplateRegistry(template_dir)


def test_starlark_literal_quotes_and_escapes():
    assert starlark_literal('say "hi"\n') == '"say \\"hi\\"\\n"'
    assert starlark_literal("café") == '"café"'
    assert starlark_literal(14) == "14"
    assert starlark_literal(None) == "None"
    assert starlark_literal(True) == "True"


def test_registry_loads_shipped_templates(registry):
    assert registry.names() == ["image", "notify"]


def test_registry_requires_existing_directory(tmp_path):
    with pytest.raises(RuntimeError):
        TemplateRegistry(tmp_path / "missing")


def test_materialize_writes_notify_document(registry, tmp_path):
    request = NotifyRequest(text='he said "hi"').apply_defaults()
    with ScratchFiles(tmp_path) as scratch:
        source = materialize(registry, request, scratch)

        assert source.parent == tmp_path
        assert source.name.startswith("tidbyt")
        assert source.suffix == ".star"
        document = source.read_text()
        assert 'TEXT = "he said \\"hi\\""' in document
        assert 'TEXT_COLOR = "#ffffff"' in document
        assert 'BACKGROUND_COLOR = "#000000"' in document
        assert "TEXT_SIZE = 14" in document
        assert "ICON_DATA = None" in document

    assert not source.exists()


def test_materialize_writes_image_document(registry, tmp_path):
    request = ImageRequest(image="https://example.com/cat.png", delay=100).apply_defaults()
    with ScratchFiles(tmp_path) as scratch:
        document = materialize(registry, request, scratch).read_text()

    assert 'IMAGE_URL = "https://example.com/cat.png"' in document
    assert "IMAGE_DATA = None" in document
    assert "HEIGHT = 32" in document
    assert "WIDTH = 64" in document
    assert "DELAY = 100" in document


def test_materialize_is_deterministic_apart_from_the_file_name(registry, tmp_path):
    request = NotifyRequest(text="same", icon=None).apply_defaults()
    with ScratchFiles(tmp_path) as scratch:
        first = materialize(registry, request, scratch)
        second = materialize(registry, request, scratch)

        assert first != second
        assert first.read_text() == second.read_text()


def test_missing_template_raises_and_leaves_file_for_cleanup(tmp_path):
    template_dir = tmp_path / "templates"
    template_dir.mkdir()
    (template_dir / "image.star").write_text("IMAGE = {{ image_url|starlark }}\n")
    scratch_dir = tmp_path / "scratch"
    scratch_dir.mkdir()

    scratch = ScratchFiles(scratch_dir)
    with pytest.raises(RenderPrepError):
        materialize(TemplateRegistry(template_dir), NotifyRequest(text="hi").apply_defaults(), scratch)

    assert len(scratch.paths) == 1
    assert scratch.paths[0].exists()
    scratch.cleanup()
    assert list(scratch_dir.iterdir()) == []


def test_undefined_template_variable_is_a_prep_error(tmp_path):
    template_dir = tmp_path / "templates"
    template_dir.mkdir()
    (template_dir / "notify.star").write_text("X = {{ not_a_field }}\n")

    with ScratchFiles(tmp_path) as scratch:
        with pytest.raises(RenderPrepError):
            materialize(TemplateRegistry(template_dir), NotifyRequest(text="hi").apply_defaults(), scratch)


def test_unwritable_scratch_dir_is_a_prep_error(registry, tmp_path):
    scratch = ScratchFiles(tmp_path / "does-not-exist")
    with pytest.raises(RenderPrepError):
        materialize(registry, NotifyRequest(text="hi").apply_defaults(), scratch)
    assert scratch.paths == []


def test_icon_is_embedded_when_present(icon_registry, tmp_path):
    with ScratchFiles(tmp_path) as scratch:
        document = materialize(icon_registry, NotifyRequest(text="hi", icon="bell").apply_defaults(), scratch).read_text()

    assert 'ICON = "UE5HREFUQQ=="' in document


@pytest.mark.parametrize("icon", ["missing", "../bell", "bell/.."])
def test_unknown_or_unsafe_icons_are_skipped(icon_registry, icon):
    assert icon_registry.icon_data(icon) is None


def test_icon_lookup_reads_from_icon_directory(icon_registry):
    assert icon_registry.icon_data("bell") == "UE5HREFUQQ=="
    assert Path(icon_registry.template_dir, "icons", "bell.png").exists()
