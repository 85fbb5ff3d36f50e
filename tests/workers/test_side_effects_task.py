from __future__ import annotations

from types import SimpleNamespace

import pytest

from app.workers.tasks import side_effects
from tests.workers.worker_fixtures import AlertRecorder, StubSessionFactory


class OutboxRecorder:
    def __init__(self) -> None:
        self.rows: list[dict[str, object]] = []

    async def record_job(self, session, **kwargs: object) -> SimpleNamespace:
        self.rows.append(kwargs)
        return SimpleNamespace(id=len(self.rows))


@pytest.fixture
def outbox(monkeypatch) -> OutboxRecorder:
    recorder = OutboxRecorder()
    monkeypatch.setattr(side_effects, "SessionLocal", StubSessionFactory())
    monkeypatch.setattr(side_effects, "OutboxEventsRepo", recorder)
    return recorder


@pytest.mark.asyncio
async def test_job_is_recorded_in_outbox(monkeypatch, outbox: OutboxRecorder) -> None:
    alerts = AlertRecorder()
    monkeypatch.setattr(side_effects, "send_ops_alert", alerts)

    result = await side_effects.process_side_effect_job_async(
        job={
            "job_type": "purchase_confirmation_email",
            "payload": {"user_id": 42, "offering_id": 11},
            "transition": "purchase_completed",
        }
    )

    assert result == {"status": "recorded", "outbox_event_id": 1, "alerted": False}
    assert outbox.rows == [
        {
            "job_type": "purchase_confirmation_email",
            "payload": {"user_id": 42, "offering_id": 11},
            "transition": "purchase_completed",
        }
    ]
    assert alerts.calls == []


@pytest.mark.asyncio
async def test_review_job_raises_ops_alert(monkeypatch, outbox: OutboxRecorder) -> None:
    alerts = AlertRecorder()
    monkeypatch.setattr(side_effects, "send_ops_alert", alerts)

    result = await side_effects.process_side_effect_job_async(
        job={
            "job_type": "donation_transfer_review",
            "payload": {"payment_intent_ref": "pi_1", "amount": 800},
            "transition": "purchase_completed",
        }
    )

    assert result["alerted"] is True
    assert alerts.calls == [
        {
            "event": "access_donation_transfer_review_required",
            "payload": {
                "transition": "purchase_completed",
                "payment_intent_ref": "pi_1",
                "amount": 800,
            },
        }
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "job",
    [
        None,
        {"job_type": "", "payload": {}},
        {"job_type": "membership_sync", "payload": "not-a-dict"},
    ],
)
async def test_invalid_jobs_are_dropped(monkeypatch, outbox: OutboxRecorder, job) -> None:
    monkeypatch.setattr(side_effects, "send_ops_alert", AlertRecorder())

    result = await side_effects.process_side_effect_job_async(job=job)

    assert result == {"status": "invalid"}
    assert outbox.rows == []


def test_process_side_effect_job_task_wrapper(monkeypatch) -> None:
    async def fake_async(*, job: dict[str, object]) -> dict[str, object]:
        return {"status": "recorded", "outbox_event_id": 9, "job_type": job["job_type"]}

    monkeypatch.setattr(side_effects, "process_side_effect_job_async", fake_async)

    result = side_effects.process_side_effect_job(
        job={"job_type": "membership_sync", "payload": {}, "transition": None}
    )
    assert result["outbox_event_id"] == 9
    assert result["job_type"] == "membership_sync"
