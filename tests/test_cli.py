import uuid

import pytest
import yaml

import schedule_to_ics
from schedule_to_ics_impl import schedule_to_ics as run

SCHEDULE = """
timezone: America/New_York
stream_links:
  - label: Main
    url: https://stream.example/main
access_conference_url: https://example.org/access
days:
  - date: 2025-01-15
    sessions:
      - title: Opening
        time: "09:00-10:00"
        uid: opening
      - title: Keynote
        time: "10:00-11:00"
        abstract: Big ideas.
      - title: TBD
"""


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_full_run_with_default_paths(workdir, write_schedule, capsys):
    path = write_schedule(SCHEDULE)
    assert schedule_to_ics.main([]) == 0

    out = capsys.readouterr().out
    assert "Updated _data/schedule.yml with generated session uids" in out
    assert "Wrote assets/continuumcon-schedule.ics (2 events)" in out
    assert "ICS validated: 2 events match schedule.yml" in out

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    sessions = data["days"][0]["sessions"]
    assert sessions[0]["uid"] == "opening"
    keynote_uid = sessions[1]["uid"]
    uuid.UUID(keynote_uid)

    ics = (workdir / "assets" / "continuumcon-schedule.ics").read_bytes().decode("utf-8")
    assert "UID:opening@continuumcon.local\r\n" in ics
    assert f"UID:{keynote_uid}@continuumcon.local\r\n" in ics
    assert "DTSTART:20250115T140000Z\r\n" in ics


def test_second_run_keeps_uids(workdir, write_schedule, capsys):
    path = write_schedule(SCHEDULE)
    assert schedule_to_ics.main([]) == 0
    first = path.read_text(encoding="utf-8")
    capsys.readouterr()

    assert schedule_to_ics.main([]) == 0
    assert path.read_text(encoding="utf-8") == first
    assert "Updated" not in capsys.readouterr().out


def test_missing_schedule_exits_1(workdir, capsys):
    assert schedule_to_ics.main([]) == 1
    assert "Schedule data not found at _data/schedule.yml" in capsys.readouterr().err
    assert not (workdir / "assets").exists()


def test_usage(capsys):
    assert schedule_to_ics.main(["a.yml", "b.ics", "c"]) == 1
    assert "Usage" in capsys.readouterr().out


def test_explicit_paths(tmp_path, write_schedule):
    path = write_schedule(SCHEDULE, "other.yml")
    out = tmp_path / "cal" / "feed.ics"
    assert schedule_to_ics.main([str(path), str(out)]) == 0
    assert out.exists()


def test_zero_sessions(tmp_path, write_schedule, capsys):
    path = write_schedule("days: []\n")
    out = tmp_path / "out.ics"
    assert run(path, out) == 0
    text = out.read_bytes().decode("utf-8")
    assert text.startswith("BEGIN:VCALENDAR\r\n")
    assert text.endswith("END:VCALENDAR\r\n")
    assert "BEGIN:VEVENT" not in text
    assert "ICS validated: 0 events" in capsys.readouterr().out


def test_missing_uid_exits_3_after_validation(tmp_path, write_schedule, capsys):
    path = write_schedule(SCHEDULE)
    before = path.read_text(encoding="utf-8")
    assert schedule_to_ics.main(["--no-backfill", str(path), str(tmp_path / "out.ics")]) == 3

    captured = capsys.readouterr()
    assert "ICS validated: 1 events" in captured.out
    assert "Missing uid for the following sessions" in captured.err
    assert "- 2025-01-15 10:00: Keynote" in captured.err
    assert path.read_text(encoding="utf-8") == before


def test_validation_failure_exits_2(tmp_path, write_schedule, monkeypatch, capsys):
    import schedule_to_ics_impl

    path = write_schedule(SCHEDULE)
    monkeypatch.setattr(schedule_to_ics_impl, "render_calendar", lambda events: "BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n")
    assert run(path, tmp_path / "out.ics", backfill=False) == 2

    err = capsys.readouterr().err
    assert "ICS validation failed:" in err
    assert "event count mismatch: expected 1 events, found 0 in ICS" in err
    # validation errors take precedence over missing uids
    assert "Missing uid" not in err


def test_unknown_timezone_exits_1(tmp_path, write_schedule, capsys):
    path = write_schedule("timezone: Nowhere/Special\ndays: []\n")
    assert run(path, tmp_path / "out.ics") == 1
    assert "Unknown timezone: Nowhere/Special" in capsys.readouterr().err


@pytest.mark.parametrize("title,summary", [
    ("Panel\\LQ and A", "Panel\u2028Q and A"),
    ("Panel\\rQ and A", "Panel Q and A"),
    ("Panel\\x85Q and A", "Panel\x85Q and A"),
])
def test_titles_with_other_line_separators_validate(tmp_path, write_schedule, capsys, title, summary):
    path = write_schedule(f"""
        days:
          - date: 2025-03-01
            sessions:
              - title: "{title}"
                time: "09:00-10:00"
                uid: a
    """)
    out = tmp_path / "out.ics"
    assert run(path, out) == 0
    assert f"SUMMARY:{summary}\r\n" in out.read_bytes().decode("utf-8")
    assert "ICS validated: 1 events" in capsys.readouterr().out
