import json
from pathlib import Path

import pytest


@pytest.fixture
def load_json():
    def _load(path):
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    return _load


@pytest.fixture
def cases_path():
    return Path(__file__).parent / "data" / "cases"


@pytest.fixture
def write_json(tmp_path):
    def _write(name, data):
        path = tmp_path / name
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return _write
