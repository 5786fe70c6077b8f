import base64
import subprocess
from pathlib import Path
from unittest.mock import patch

import fitz
import pytest

from exercise_vault.ingestion import (
    DocumentUnreadable,
    PageImageMissing,
    PdftoppmStrategy,
    PyMuPdfStrategy,
    Rasterizer,
    RenderStrategy,
    RenderingUnavailable,
    candidate_page_filenames,
)


def make_pdf(path: Path, pages: int) -> Path:
    doc = fitz.open()
    for idx in range(pages):
        page = doc.new_page()
        page.insert_text((72, 72), f"Exercise {idx + 1}")
    doc.save(path)
    doc.close()
    return path


class FakeStrategy(RenderStrategy):
    """Writes the given file names into the scratch dir and reports ``succeed``."""

    def __init__(self, name, succeed, filenames=()):
        self.name = name
        self.succeed = succeed
        self.filenames = list(filenames)
        self.output_dirs = []

    def render(self, pdf_path, output_dir, dpi):
        self.output_dirs.append(output_dir)
        for filename in self.filenames:
            (output_dir / filename).write_bytes(f"{self.name}:{filename}".encode("utf-8"))
        return self.succeed


def test_candidate_page_filenames_priority():
    assert candidate_page_filenames(7) == ["page-7.png", "page-07.png", "page-007.png", "7.png"]
    assert candidate_page_filenames(12)[0] == "page-12.png"


def test_first_successful_strategy_is_used_for_every_page(tmp_path):
    pdf = make_pdf(tmp_path / "doc.pdf", 3)
    broken = FakeStrategy("broken", succeed=False, filenames=["page-1.png"])
    good = FakeStrategy("good", succeed=True, filenames=["page-01.png", "page-02.png", "page-03.png"])
    unused = FakeStrategy("unused", succeed=True, filenames=["page-1.png"])

    result = Rasterizer(strategies=[broken, good, unused]).rasterize(pdf)

    assert result.backend == "good"
    assert result.page_count == 3
    assert [p.page_number for p in result.pages] == [1, 2, 3]
    assert result.complete and result.warnings == []
    assert unused.output_dirs == []
    # Leftovers from the failed attempt are not mixed into the output.
    first = base64.b64decode(result.pages[0].data_url.split("base64,", 1)[1])
    assert first == b"good:page-01.png"


def test_undeletable_leftovers_do_not_stop_the_chain(tmp_path, monkeypatch):
    pdf = make_pdf(tmp_path / "doc.pdf", 1)
    broken = FakeStrategy("broken", succeed=False, filenames=["page-1.png"])
    good = FakeStrategy("good", succeed=True, filenames=["page-1.png"])

    def failing_unlink(self, *args, **kwargs):
        raise PermissionError("busy")

    monkeypatch.setattr(Path, "unlink", failing_unlink)
    result = Rasterizer(strategies=[broken, good]).rasterize(pdf)

    assert result.backend == "good"
    assert good.output_dirs[0] != broken.output_dirs[0]
    data = base64.b64decode(result.pages[0].data_url.split("base64,", 1)[1])
    assert data == b"good:page-1.png"
    assert not broken.output_dirs[0].exists()


def test_all_strategies_failing_yields_placeholder_pages(tmp_path):
    pdf = make_pdf(tmp_path / "doc.pdf", 4)
    rasterizer = Rasterizer(strategies=[FakeStrategy("a", False), FakeStrategy("b", False)])

    result = rasterizer.rasterize(pdf)

    assert result.backend is None
    assert len(result.pages) == 4
    assert all(p.placeholder for p in result.pages)
    assert all(p.data_url.startswith("data:image/png;base64,") for p in result.pages)
    assert len(result.warnings) == 1 and isinstance(result.warnings[0], RenderingUnavailable)


def test_missing_page_is_reported_as_warning(tmp_path):
    pdf = make_pdf(tmp_path / "doc.pdf", 3)
    partial = FakeStrategy("partial", succeed=True, filenames=["page-1.png", "3.png"])

    result = Rasterizer(strategies=[partial]).rasterize(pdf)

    assert [p.page_number for p in result.pages] == [1, 3]
    assert not result.complete
    assert result.missing_pages == [2]
    assert len(result.warnings) == 1
    assert isinstance(result.warnings[0], PageImageMissing)
    assert result.warnings[0].page_number == 2


def test_success_without_any_page_file_raises(tmp_path):
    pdf = make_pdf(tmp_path / "doc.pdf", 2)
    with pytest.raises(PageImageMissing):
        Rasterizer(strategies=[FakeStrategy("empty", succeed=True)]).rasterize(pdf)


def test_scratch_directory_removed_on_every_path(tmp_path):
    pdf = make_pdf(tmp_path / "doc.pdf", 1)

    ok = FakeStrategy("ok", succeed=True, filenames=["page-1.png"])
    Rasterizer(strategies=[ok]).rasterize(pdf)
    assert ok.output_dirs and not ok.output_dirs[0].exists()

    failing = FakeStrategy("failing", succeed=False)
    Rasterizer(strategies=[failing]).rasterize(pdf)
    assert failing.output_dirs and not failing.output_dirs[0].exists()

    empty = FakeStrategy("empty", succeed=True)
    with pytest.raises(PageImageMissing):
        Rasterizer(strategies=[empty]).rasterize(pdf)
    assert not empty.output_dirs[0].exists()


def test_unreadable_document(tmp_path):
    garbage = tmp_path / "broken.pdf"
    garbage.write_bytes(b"this is not a pdf")
    with pytest.raises(DocumentUnreadable):
        Rasterizer(strategies=[]).rasterize(garbage)
    with pytest.raises(DocumentUnreadable):
        Rasterizer(strategies=[]).rasterize(tmp_path / "missing.pdf")


def test_unavailable_strategies_are_skipped(tmp_path):
    pdf = make_pdf(tmp_path / "doc.pdf", 1)

    class Unavailable(FakeStrategy):
        def available(self):
            return False

    skipped = Unavailable("skipped", succeed=True, filenames=["page-1.png"])
    fallback = FakeStrategy("fallback", succeed=True, filenames=["1.png"])
    result = Rasterizer(strategies=[skipped, fallback]).rasterize(pdf)
    assert result.backend == "fallback"
    assert skipped.output_dirs == []


def test_pymupdf_strategy_renders_every_page(tmp_path):
    pdf = make_pdf(tmp_path / "doc.pdf", 2)
    result = Rasterizer(strategies=[PyMuPdfStrategy()], dpi=72).rasterize(pdf)
    assert result.backend == "pymupdf"
    assert len(result.pages) == 2
    assert all(not p.placeholder for p in result.pages)


def test_pdftoppm_command_and_failures(tmp_path):
    strategy = PdftoppmStrategy("/usr/bin/pdftoppm")
    command = strategy.build_command(Path("/docs/a.pdf"), tmp_path, 150)
    assert command == ["/usr/bin/pdftoppm", "-png", "-r", "150", "/docs/a.pdf", str(tmp_path / "page")]

    failed = subprocess.CompletedProcess(command, returncode=1, stdout=b"", stderr=b"boom")
    with patch("exercise_vault.ingestion.rasterizer.subprocess.run", return_value=failed):
        assert strategy.render(Path("/docs/a.pdf"), tmp_path, 150) is False

    with patch("exercise_vault.ingestion.rasterizer.subprocess.run", side_effect=FileNotFoundError("nope")):
        assert strategy.render(Path("/docs/a.pdf"), tmp_path, 150) is False

    ok = subprocess.CompletedProcess(command, returncode=0, stdout=b"", stderr=b"")
    with patch("exercise_vault.ingestion.rasterizer.subprocess.run", return_value=ok):
        assert strategy.render(Path("/docs/a.pdf"), tmp_path, 150) is True


def test_image_input_is_a_single_page(tmp_path):
    image = tmp_path / "scan.jpg"
    image.write_bytes(b"\xff\xd8\xff fake jpeg")
    result = Rasterizer(strategies=[]).rasterize(image)
    assert result.page_count == 1
    assert result.backend == "image"
    assert result.pages[0].data_url.startswith("data:image/jpeg;base64,")
