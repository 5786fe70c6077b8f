from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"


@dataclass
class VaultConfig:
    """
    Everything the ingestion components need to know about their environment.
    Built once by the caller and handed to each constructor.
    """

    storage_root: Path
    database_url: Optional[str] = None
    render_dpi: int = 150
    scratch_prefix: str = "vault_pdf_"
    gemini_model: str = DEFAULT_GEMINI_MODEL
    gemini_base_url: str = DEFAULT_GEMINI_BASE_URL
    gemini_timeout: float = 120.0

    def __post_init__(self):
        self.storage_root = Path(self.storage_root)
        if not self.database_url:
            self.database_url = f"sqlite+pysqlite:///{self.storage_root / 'exercise_vault.db'}"

    @classmethod
    def from_env(cls) -> "VaultConfig":
        return cls(
            storage_root=Path(os.getenv("VAULT_STORAGE_ROOT", "./data")),
            database_url=os.getenv("DATABASE_URL"),
            render_dpi=int(os.getenv("RENDER_DPI", "150")),
            gemini_model=os.getenv("GEMINI_MODEL", DEFAULT_GEMINI_MODEL),
            gemini_base_url=os.getenv("GEMINI_BASE_URL", DEFAULT_GEMINI_BASE_URL),
            gemini_timeout=float(os.getenv("GEMINI_TIMEOUT", "120")),
        )
