import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from uuid import UUID

from pydantic import BaseModel

from newsintake.models import HealthStatus, SourceHealth
from newsintake.storage import claim_next_job, complete_job, enqueue_job, get_job
from newsintake.utils import json_dumps


class Color(Enum):
    RED = "red"


@dataclass
class Payload:
    value: str


class PayloadModel(BaseModel):
    name: str


def test_json_dumps_handles_supported_types():
    payload = {
        "dataclass": Payload(value="ok"),
        "health": SourceHealth(
            source_id="a", status=HealthStatus.WARN, last_error=None, last_run_at="now"
        ),
        "enum": Color.RED,
        "datetime": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "date": date(2025, 1, 2),
        "path": Path("/tmp/newsintake"),
        "uuid": UUID("12345678-1234-5678-1234-567812345678"),
        "model": PayloadModel(name="example"),
        "set": {"a", "b"},
        "tuple": ("x", "y"),
    }
    decoded = json.loads(json_dumps(payload))
    assert decoded["dataclass"]["value"] == "ok"
    assert decoded["health"]["status"] == "warn"
    assert decoded["enum"] == "red"
    assert decoded["datetime"].startswith("2025-01-01T00:00:00")
    assert decoded["date"] == "2025-01-02"
    assert decoded["path"] == "/tmp/newsintake"
    assert decoded["uuid"] == "12345678-1234-5678-1234-567812345678"
    assert decoded["model"]["name"] == "example"
    assert sorted(decoded["set"]) == ["a", "b"]
    assert decoded["tuple"] == ["x", "y"]


def test_job_result_serialization_handles_complex_types(conn):
    job_id = enqueue_job(conn, "ingest_sweep", None)
    assert claim_next_job(conn, "worker-1") is not None
    result = {
        "status": HealthStatus.OK,
        "when": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "model": PayloadModel(name="example"),
        "tuple": ("x", "y"),
    }
    assert complete_job(conn, job_id, result=result) is True
    assert get_job(conn, job_id).result["status"] == "ok"
