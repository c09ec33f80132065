import logging
import os
import re
import sys
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

log = logging.getLogger(__name__)

DATA_FILE = Path("_data") / "schedule.yml"
OUT_FILE = Path("assets") / "continuumcon-schedule.ics"

PRODID = "-//ContinuumCon//Schedule//EN"
CALNAME = "ContinuumCon Schedule"
UID_DOMAIN = "continuumcon.local"
ACCESS_HEADING = "Access ContinuumCon content:"
TZ_ENV = "CONFERENCE_TZ"

EXIT_OK = 0
EXIT_BAD_INPUT = 1
EXIT_VALIDATION_FAILED = 2
EXIT_MISSING_UID = 3


class ScheduleError(Exception):
    pass


class ScheduleNotFoundError(ScheduleError):
    pass


@dataclass
class Schedule:
    data: dict
    path: Path | None
    timezone: str

    @property
    def days(self) -> list:
        return self.data.get("days") or []

    @property
    def stream_links(self) -> list:
        return self.data.get("stream_links") or []

    @property
    def access_url(self) -> str | None:
        url = self.data.get("access_conference_url")
        if url is None or not str(url).strip():
            return None
        return str(url).strip()


@dataclass
class CalendarEvent:
    uid: str
    summary: str
    dtstart: datetime
    dtend: datetime
    description: str | None = None

    @property
    def start_stamp(self) -> str:
        return dt_to_ics(self.dtstart)

    @property
    def end_stamp(self) -> str:
        return dt_to_ics(self.dtend)


@dataclass
class MissingUid:
    date: str
    time: str
    title: str


def _blank(value) -> bool:
    return value is None or str(value).strip() == ""


def resolve_timezone(data: dict) -> str:
    """
    Timezone that session wall-clock times are written in.
    The schedule's own `timezone` wins, then $CONFERENCE_TZ, then UTC.
    """
    for candidate in (data.get("timezone"), os.environ.get(TZ_ENV)):
        if not _blank(candidate):
            name = str(candidate).strip()
            break
    else:
        name = "UTC"
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ScheduleError(f"Unknown timezone: {name}")
    return name


def parse_schedule(text: str, path: Path | None = None) -> Schedule:
    try:
        # safe_load only builds plain mappings, lists, scalars and dates
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ScheduleError(f"Could not parse schedule data: {e}")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ScheduleError("Schedule data must be a mapping")
    tz_name = resolve_timezone(data)
    log.debug("Interpreting session times in %s", tz_name)
    return Schedule(data=data, path=path, timezone=tz_name)


def load_schedule(path: Path) -> Schedule:
    path = Path(path)
    if not path.exists():
        raise ScheduleNotFoundError(f"Schedule data not found at {path}")
    return parse_schedule(path.read_text(encoding="utf-8"), path)


def backfill_uids(schedule: Schedule) -> int:
    """
    Give every session without a `uid` a random UUID. Sessions that already
    have one keep it, so running this again assigns nothing.
    Returns how many uids were assigned.
    """
    assigned = 0
    for day in schedule.days:
        if not isinstance(day, dict):
            continue
        for session in day.get("sessions") or []:
            if not isinstance(session, dict):
                continue
            if _blank(session.get("uid")):
                session["uid"] = str(uuid.uuid4())
                assigned += 1
    return assigned


def save_schedule(schedule: Schedule) -> None:
    if schedule.path is None:
        raise ScheduleError("Schedule was not loaded from a file")
    with open(schedule.path, "w", encoding="utf-8") as f:
        yaml.safe_dump(schedule.data, f, sort_keys=False, allow_unicode=True)


def dt_to_ics(dt: datetime) -> str:
    return dt.strftime("%Y%m%dT%H%M%SZ")


def ics_escape(s: str) -> str:
    """Escape text per RFC 5545."""
    if s is None:
        return ""
    s = s.replace("\\", "\\\\").replace(";", r"\;").replace(",", r"\,")
    return re.sub(r"\r\n|\r|\n", r"\\n", s)


def fold_ics_line(line: str, limit: int = 75) -> str:
    """
    Fold a content line at 75 octets with CRLF and a space on continuation.
    Multi-byte characters are never split across lines.
    """
    if len(line.encode("utf-8")) <= limit:
        return line
    parts = []
    current, size = "", 0
    for ch in line:
        width = len(ch.encode("utf-8"))
        if size + width > limit:
            parts.append(current)
            current, size = " ", 1
        current += ch
        size += width
    parts.append(current)
    return "\r\n".join(parts)


def unfold_ics(text: str) -> str:
    return re.sub(r"\r?\n[ \t]", "", text)


def parse_time_range(text) -> tuple[str, str] | None:
    times = [t.strip() for t in str(text).split("-")]
    if len(times) != 2:
        return None
    return times[0], times[1]


def parse_clock(text: str) -> tuple[int, int] | None:
    parts = text.split(":")
    if len(parts) > 2 or not all(p.strip().isdigit() for p in parts):
        return None
    hour = int(parts[0])
    minute = int(parts[1]) if len(parts) == 2 else 0
    if hour > 23 or minute > 59:
        return None
    return hour, minute


def parse_day(raw) -> date | None:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw).strip())
    except ValueError:
        return None


def local_to_utc(day: date, hour: int, minute: int, tz: ZoneInfo) -> datetime:
    # fold=0: ambiguous or skipped wall times take the pre-transition offset
    local = datetime(day.year, day.month, day.day, hour, minute, tzinfo=tz)
    return local.astimezone(timezone.utc)


def stream_urls(stream_links: list) -> list[str]:
    urls = []
    for link in stream_links:
        if not isinstance(link, dict):
            continue
        # labels are accepted in the data but not shown in descriptions
        found = link.get("urls") or link.get("url") or []
        if isinstance(found, str):
            found = [found]
        urls.extend(str(u) for u in found if u is not None)
    return urls


def build_description(session: dict, schedule: Schedule) -> str | None:
    lines = []
    if not _blank(session.get("abstract")):
        lines.append(str(session["abstract"]).strip())
    if not _blank(session.get("difficulty")):
        lines.append(f"Level: {session['difficulty']}")

    if schedule.stream_links:
        lines.append("")
        lines.append("Watch the stream:")
        lines.extend(f"- {u}" for u in stream_urls(schedule.stream_links))

    if schedule.access_url:
        lines.append("")
        lines.append(ACCESS_HEADING)
        lines.append(f"- {schedule.access_url}")

    description = "\n".join(lines)
    return description or None


def build_events(schedule: Schedule) -> tuple[list[CalendarEvent], list[MissingUid]]:
    """
    Turn every complete session into a CalendarEvent, in schedule order.
    Sessions without a usable title or time range are skipped; sessions
    without a uid are returned separately instead of being rendered.
    """
    tz = ZoneInfo(schedule.timezone)
    events: list[CalendarEvent] = []
    missing: list[MissingUid] = []

    for day in schedule.days:
        if not isinstance(day, dict):
            continue
        day_date = parse_day(day.get("date"))
        for session in day.get("sessions") or []:
            if not isinstance(session, dict):
                continue
            if _blank(session.get("time")) or _blank(session.get("title")):
                continue
            times = parse_time_range(session["time"])
            start = parse_clock(times[0]) if times else None
            end = parse_clock(times[1]) if times else None
            if day_date is None or start is None or end is None:
                log.debug("Skipping malformed session %r on %r", session.get("title"), day.get("date"))
                continue

            summary = re.sub(r"\r\n|\r|\n", " ", str(session["title"]))
            if _blank(session.get("uid")):
                missing.append(MissingUid(day_date.isoformat(), times[0], summary))
                continue

            events.append(CalendarEvent(
                uid=f"{str(session['uid']).strip()}@{UID_DOMAIN}",
                summary=summary,
                dtstart=local_to_utc(day_date, *start, tz),
                dtend=local_to_utc(day_date, *end, tz),
                description=build_description(session, schedule),
            ))
    return events, missing


def render_event(event: CalendarEvent, stamp: str) -> list[str]:
    lines = [
        "BEGIN:VEVENT",
        f"UID:{event.uid}",
        f"SUMMARY:{ics_escape(event.summary)}",
        f"DTSTART:{event.start_stamp}",
        f"DTEND:{event.end_stamp}",
        f"DTSTAMP:{stamp}",
    ]
    if event.description:
        lines.append(f"DESCRIPTION:{ics_escape(event.description)}")
    lines.append("END:VEVENT")
    return [fold_ics_line(line) for line in lines]


def render_calendar(events: list[CalendarEvent], now: datetime | None = None) -> str:
    stamp = dt_to_ics(now or datetime.now(timezone.utc))
    lines = [
        "BEGIN:VCALENDAR",
        f"PRODID:{PRODID}",
        "VERSION:2.0",
        "CALSCALE:GREGORIAN",
        f"X-WR-CALNAME:{CALNAME}",
        f"DTSTAMP:{stamp}",
    ]
    for i, event in enumerate(events):
        if i:
            lines.append("")
        lines.extend(render_event(event, stamp))
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


def write_calendar(path: Path, text: str) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # bytes, so CRLF survives untranslated on every platform
    path.write_bytes(text.encode("utf-8"))


def extract_event_blocks(content: str) -> list[str]:
    return re.findall(r"BEGIN:VEVENT\r?\n(.*?)\r?\nEND:VEVENT", unfold_ics(content), re.DOTALL)


def validate_ics_text(content: str, expected: list[CalendarEvent]) -> list[str]:
    blocks = extract_event_blocks(content)
    errors = []
    if len(blocks) != len(expected):
        errors.append(f"event count mismatch: expected {len(expected)} events, found {len(blocks)} in ICS")

    seen_uids = set()
    for idx, (block, exp) in enumerate(zip(blocks, expected), start=1):
        # only CRLF ends a content line; titles may hold other line separators
        block_lines = re.split(r"\r?\n", block)
        lines = set(block_lines)
        if f"SUMMARY:{ics_escape(exp.summary)}" not in lines:
            errors.append(f"event {idx}: SUMMARY mismatch (expected '{exp.summary}')")
        if f"DTSTART:{exp.start_stamp}" not in lines:
            errors.append(f"event {idx}: DTSTART mismatch (expected {exp.start_stamp})")
        if f"DTEND:{exp.end_stamp}" not in lines:
            errors.append(f"event {idx}: DTEND mismatch (expected {exp.end_stamp})")
        uid = next((line[len("UID:"):] for line in block_lines if line.startswith("UID:")), None)
        if uid is not None:
            if uid in seen_uids:
                errors.append(f"event {idx}: duplicate UID {uid}")
            seen_uids.add(uid)
    return errors


def validate_ics_file(path: Path, expected: list[CalendarEvent]) -> list[str]:
    return validate_ics_text(Path(path).read_bytes().decode("utf-8"), expected)


def schedule_to_ics(schedule_path: Path = DATA_FILE, ics_out: Path = OUT_FILE, backfill: bool = True) -> int:
    """
    Regenerate the calendar from the schedule and check the written file.
    Returns the process exit status.
    """
    try:
        schedule = load_schedule(schedule_path)
    except ScheduleError as e:
        print(e, file=sys.stderr)
        return EXIT_BAD_INPUT

    if backfill and backfill_uids(schedule):
        save_schedule(schedule)
        print(f"Updated {schedule_path} with generated session uids")

    events, missing = build_events(schedule)
    write_calendar(ics_out, render_calendar(events))
    print(f"Wrote {ics_out} ({len(events)} events)")

    errors = validate_ics_file(ics_out, events)
    if errors:
        print("ICS validation failed:\n" + "\n".join(errors), file=sys.stderr)
        return EXIT_VALIDATION_FAILED
    print(f"ICS validated: {len(events)} events match {Path(schedule_path).name}")

    if missing:
        print(f"Missing uid for the following sessions (add a 'uid' field to each session in {schedule_path}):",
              file=sys.stderr)
        for m in missing:
            print(f"- {m.date} {m.time}: {m.title}", file=sys.stderr)
        return EXIT_MISSING_UID
    return EXIT_OK
