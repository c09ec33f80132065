import textwrap

import pytest


@pytest.fixture(autouse=True)
def no_conference_tz(monkeypatch):
    monkeypatch.delenv("CONFERENCE_TZ", raising=False)


@pytest.fixture
def write_schedule(tmp_path):
    def _write(text: str, name: str = "schedule.yml"):
        path = tmp_path / "_data" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(text), encoding="utf-8")
        return path
    return _write
