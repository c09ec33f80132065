# Azure Function (Python) - HTTP trigger
import logging
import azure.functions as func
from .schedule_to_ics_impl import ScheduleError, build_events, parse_schedule, render_calendar, validate_ics_text

def convert(yaml_text: str) -> str:
    # No source file to persist generated uids to, so sessions without one are left out
    schedule = parse_schedule(yaml_text)
    events, missing = build_events(schedule)
    for m in missing:
        logging.warning("Session without uid left out of calendar: %s %s %s", m.date, m.time, m.title)
    ics = render_calendar(events)
    errors = validate_ics_text(ics, events)
    if errors:
        raise ScheduleError("ICS validation failed: " + "; ".join(errors))
    return ics

def main(req: func.HttpRequest) -> func.HttpResponse:
    try:
        yaml_text = req.get_body().decode("utf-8", errors="ignore")
        ics = convert(yaml_text)
        return func.HttpResponse(ics, status_code=200, mimetype="text/calendar")
    except Exception as e:
        logging.exception("Conversion failed")
        return func.HttpResponse(f"Error: {e}", status_code=400)
