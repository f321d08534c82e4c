import pytest
from pydantic import ValidationError

from pipelines.models import JobStatus
from server.messages import (
    CancelCommand,
    ClearCacheCommand,
    JobStatusEvent,
    JobStatusPayload,
    QueryCommand,
    StartCommand,
    event_to_message,
    parse_command,
    parse_event,
)


def test_start_command_is_validated_into_job_config():
    command = parse_command({
        "type": "start",
        "payload": {"job_id": "j1", "seed_urls": ["https://docs.example.com/"], "max_depth": 1},
    })

    assert isinstance(command, StartCommand)
    assert command.payload.max_depth == 1
    assert command.payload.max_pages == 50
    assert command.payload.host_allow_list() == ["docs.example.com"]


def test_optional_payloads():
    assert isinstance(parse_command({"type": "cancel"}), CancelCommand)
    assert parse_command({"type": "cancel"}).payload.job_id is None
    assert isinstance(parse_command({"type": "clear-cache"}), ClearCacheCommand)

    query = parse_command({"type": "query", "payload": {"query": "how?"}})
    assert isinstance(query, QueryCommand)
    assert query.payload.intelligent is True
    assert query.payload.limit is None


@pytest.mark.parametrize("raw", [
    {"type": "explode"},
    {"payload": {}},
    {"type": "query", "payload": {"query": ""}},
    {"type": "start", "payload": {"job_id": "j", "seed_urls": []}},
    {"type": "start", "payload": {"job_id": "j", "seed_urls": ["https://a/"], "max_pages": 0}},
    "not a message",
])
def test_invalid_commands_raise(raw):
    with pytest.raises(ValidationError):
        parse_command(raw)


def test_events_serialize_to_plain_json():
    event = JobStatusEvent(payload=JobStatusPayload(job_id="j", status=JobStatus.COMPLETED,
                                                    processed_pages=3, reason="page-limit-reached"))
    message = event_to_message(event)

    assert message == {
        "type": "job-status",
        "payload": {
            "job_id": "j",
            "status": "completed",
            "processed_pages": 3,
            "discovered_pages": 0,
            "error": None,
            "reason": "page-limit-reached",
        },
    }
    assert parse_event(message) == event
