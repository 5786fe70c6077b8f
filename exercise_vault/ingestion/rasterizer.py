from __future__ import annotations

import logging
import shutil
import subprocess
import sys
import tempfile
from io import BytesIO
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import fitz  # PyMuPDF
from PIL import Image
from pypdf import PdfReader

from .config import VaultConfig
from .errors import DocumentUnreadable, PageImageMissing, RenderingUnavailable, VaultError
from .models import PageImage, RasterizedDocument
from .storage import mime_for_path, to_data_url

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp"}
PDFTOPPM_PATHS = (
    "/opt/homebrew/bin/pdftoppm",
    "/usr/local/bin/pdftoppm",
    "/usr/bin/pdftoppm",
)
# US Letter at 144 DPI.
PLACEHOLDER_SIZE = (1224, 1584)


def candidate_page_filenames(page_number: int) -> List[str]:
    """
    File names a renderer may have used for a 1-based page number, in the order
    they are probed. pdftoppm pads the page number to the width of the page
    count, so the unpadded, 2- and 3-digit forms all occur.
    """
    return [
        f"page-{page_number}.png",
        f"page-{page_number:02d}.png",
        f"page-{page_number:03d}.png",
        f"{page_number}.png",
    ]


class RenderStrategy:
    """
    One way of turning every page of a PDF into PNG files inside ``output_dir``.
    ``render`` returns True only when the backend reports success; it never
    raises for backend failures.
    """

    name = "abstract"

    def available(self) -> bool:
        return True

    def render(self, pdf_path: Path, output_dir: Path, dpi: int) -> bool:
        raise NotImplementedError


class CommandRenderStrategy(RenderStrategy):
    """
    Runs an external renderer and waits for it to exit. No timeout is applied.
    """

    def __init__(self, executable: str):
        self.executable = executable
        self.name = executable

    def available(self) -> bool:
        if "/" in self.executable:
            return Path(self.executable).exists()
        return shutil.which(self.executable) is not None

    def build_command(self, pdf_path: Path, output_dir: Path, dpi: int) -> List[str]:
        raise NotImplementedError

    def render(self, pdf_path: Path, output_dir: Path, dpi: int) -> bool:
        command = self.build_command(pdf_path, output_dir, dpi)
        try:
            completed = subprocess.run(command, capture_output=True, check=False)
        except OSError as exc:
            logger.debug("Renderer %s could not be launched: %s", self.name, exc)
            return False
        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", errors="replace").strip()
            logger.debug("Renderer %s exited with %s: %s", self.name, completed.returncode, stderr)
            return False
        return True


class PdftoppmStrategy(CommandRenderStrategy):
    def build_command(self, pdf_path: Path, output_dir: Path, dpi: int) -> List[str]:
        return [self.executable, "-png", "-r", str(dpi), str(pdf_path), str(output_dir / "page")]


class SipsStrategy(CommandRenderStrategy):
    """
    macOS ``sips``. It only converts the first page of a PDF, so later pages
    surface as missing-page warnings.
    """

    def __init__(self, executable: str = "sips"):
        super().__init__(executable)

    def available(self) -> bool:
        return sys.platform == "darwin" and super().available()

    def build_command(self, pdf_path: Path, output_dir: Path, dpi: int) -> List[str]:
        return [
            self.executable,
            "-s",
            "format",
            "png",
            "-s",
            "dpiHeight",
            str(dpi),
            "-s",
            "dpiWidth",
            str(dpi),
            str(pdf_path),
            "--out",
            str(output_dir / "1.png"),
        ]


class PyMuPdfStrategy(RenderStrategy):
    name = "pymupdf"

    def render(self, pdf_path: Path, output_dir: Path, dpi: int) -> bool:
        scale = dpi / 72.0
        try:
            doc = fitz.open(pdf_path)
        except Exception as exc:  # noqa: BLE001
            logger.debug("PyMuPDF could not open %s: %s", pdf_path, exc)
            return False
        try:
            for idx in range(doc.page_count):
                pix = doc.load_page(idx).get_pixmap(matrix=fitz.Matrix(scale, scale))
                pix.save(output_dir / f"page-{idx + 1}.png")
        except Exception as exc:  # noqa: BLE001
            logger.debug("PyMuPDF failed rendering %s: %s", pdf_path, exc)
            return False
        finally:
            doc.close()
        return True


def default_strategies() -> List[RenderStrategy]:
    strategies: List[RenderStrategy] = [PdftoppmStrategy(path) for path in PDFTOPPM_PATHS]
    strategies.append(PdftoppmStrategy("pdftoppm"))
    strategies.append(SipsStrategy())
    strategies.append(PyMuPdfStrategy())
    return strategies


class Rasterizer:
    """
    Converts a document into one PNG data URL per page.

    Strategies are tried in order and the first one that reports success is
    used for every page; output from different strategies is never mixed. If
    none succeeds the caller still gets ``page_count`` blank placeholder pages.
    """

    def __init__(
        self,
        strategies: Optional[Sequence[RenderStrategy]] = None,
        dpi: int = 150,
        scratch_prefix: str = "vault_pdf_",
        placeholder_size: Tuple[int, int] = PLACEHOLDER_SIZE,
    ):
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.dpi = dpi
        self.scratch_prefix = scratch_prefix
        self.placeholder_size = placeholder_size

    @classmethod
    def from_config(cls, config: VaultConfig) -> "Rasterizer":
        return cls(dpi=config.render_dpi, scratch_prefix=config.scratch_prefix)

    def count_pages(self, pdf_path: Path) -> int:
        try:
            reader = PdfReader(str(pdf_path))
            page_count = len(reader.pages)
        except Exception as exc:  # noqa: BLE001
            raise DocumentUnreadable(f"Failed to open PDF {pdf_path}: {exc}") from exc
        if page_count == 0:
            raise DocumentUnreadable(f"PDF has zero pages: {pdf_path}")
        return page_count

    def rasterize(self, document_path) -> RasterizedDocument:
        path = Path(document_path)
        if path.suffix.lower() in IMAGE_SUFFIXES:
            return self._single_image(path)

        page_count = self.count_pages(path)
        logger.info("Rasterizing %s (%d pages)", path, page_count)

        scratch = Path(tempfile.mkdtemp(prefix=self.scratch_prefix))
        try:
            backend, output_dir = self._render_with_fallback(path, scratch)
            if backend is None:
                warning = RenderingUnavailable(
                    f"No renderer succeeded for {path}; using {page_count} placeholder pages"
                )
                logger.warning("%s", warning)
                return RasterizedDocument(
                    source_path=str(path),
                    page_count=page_count,
                    pages=self._placeholder_pages(page_count),
                    backend=None,
                    warnings=[warning],
                )
            pages, warnings = self._collect_pages(output_dir, page_count)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        if not pages:
            raise PageImageMissing(None, f"Renderer {backend} produced no page images for {path}")
        logger.info("Rendered %d/%d pages of %s with %s", len(pages), page_count, path, backend)
        return RasterizedDocument(
            source_path=str(path),
            page_count=page_count,
            pages=pages,
            backend=backend,
            warnings=warnings,
        )

    def _render_with_fallback(self, pdf_path: Path, scratch: Path) -> Tuple[Optional[str], Path]:
        output_dir = scratch
        for strategy in self.strategies:
            if not strategy.available():
                logger.debug("Renderer %s not available, skipping", strategy.name)
                continue
            if strategy.render(pdf_path, output_dir, self.dpi):
                return strategy.name, output_dir
            logger.info("Renderer %s failed for %s, trying next", strategy.name, pdf_path)
            if not self._clear_leftovers(output_dir, strategy.name):
                # Files that could not be removed must not be read back as pages.
                output_dir = Path(tempfile.mkdtemp(prefix="attempt_", dir=scratch))
        return None, output_dir

    def _clear_leftovers(self, output_dir: Path, strategy_name: str) -> bool:
        cleared = True
        for leftover in output_dir.iterdir():
            if not leftover.is_file():
                continue
            try:
                leftover.unlink()
            except OSError as exc:
                logger.warning("Could not remove %s left by %s: %s", leftover.name, strategy_name, exc)
                cleared = False
        return cleared

    def _collect_pages(self, scratch: Path, page_count: int) -> Tuple[List[PageImage], List[VaultError]]:
        pages: List[PageImage] = []
        warnings: List[VaultError] = []
        for page_number in range(1, page_count + 1):
            found = self._find_page_file(scratch, page_number)
            if found is None:
                missing = PageImageMissing(page_number)
                logger.warning("%s", missing)
                warnings.append(missing)
                continue
            pages.append(PageImage(page_number=page_number, data_url=to_data_url(found.read_bytes())))
        return pages, warnings

    def _find_page_file(self, scratch: Path, page_number: int) -> Optional[Path]:
        for name in candidate_page_filenames(page_number):
            candidate = scratch / name
            if candidate.exists():
                return candidate
        return None

    def _placeholder_pages(self, page_count: int) -> List[PageImage]:
        buffer = BytesIO()
        Image.new("RGB", self.placeholder_size, "white").save(buffer, format="PNG")
        data_url = to_data_url(buffer.getvalue())
        return [PageImage(page_number=n, data_url=data_url, placeholder=True) for n in range(1, page_count + 1)]

    def _single_image(self, path: Path) -> RasterizedDocument:
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise DocumentUnreadable(f"Failed to read image {path}: {exc}") from exc
        return RasterizedDocument(
            source_path=str(path),
            page_count=1,
            pages=[PageImage(page_number=1, data_url=to_data_url(data, mime_for_path(path)))],
            backend="image",
        )
