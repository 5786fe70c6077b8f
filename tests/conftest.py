import base64

import pytest

from exercise_vault.ingestion import LocalAssetStore, SqlAlchemyExerciseRepository, StoragePaths


def png_data_url(payload: bytes = b"\x89PNG\r\n\x1a\nfake-image") -> str:
    return "data:image/png;base64," + base64.b64encode(payload).decode("ascii")


@pytest.fixture
def assets(tmp_path):
    store = LocalAssetStore(StoragePaths(tmp_path / "vault"))
    store.ensure_images_dir()
    return store


@pytest.fixture
def repo(tmp_path, assets):
    db_path = tmp_path / "vault.db"
    return SqlAlchemyExerciseRepository(f"sqlite+pysqlite:///{db_path}", asset_store=assets)
