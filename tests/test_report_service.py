"""
tests/test_report_service.py — Scheduled Report Dispatch
=========================================================
End-to-end runs of :class:`ReportDispatcher` against SQLite, with a fake
renderer and fake delivery channels injected.

Scenario used throughout: a WEEKLY schedule for Monday 09:00 Asia/Seoul
created on Wednesday 2026-10-14, first due at 2026-10-19 00:00 UTC.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, date, datetime
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from conftest import FakeChannel, FakeRenderer, make_connection, make_workspace
from tally.database.models import (
    ChannelProvider,
    GeneratedReport,
    ReportDelivery,
    ReportSchedule,
    ReportStatus,
)
from tally.engine.periods import ensure_utc
from tally.services import report_service
from tally.services.batch import BatchErrorKind
from tally.services.report_service import (
    DispatchSettings,
    JsonRenderer,
    RenderResult,
    ReportDispatcher,
    RunStatus,
)
from tally.services.schedule_service import add_recipient, create_schedule
from tally.services.snapshot_store import MetricRecord

WED_10_KST = datetime(2026, 10, 14, 1, 0, tzinfo=UTC)
MON_09_KST = datetime(2026, 10, 19, 0, 0, tzinfo=UTC)
NEXT_MON_09_KST = datetime(2026, 10, 26, 0, 0, tzinfo=UTC)

SETTINGS = DispatchSettings(render_timeout=5, delivery_max_attempts=2, delivery_base_delay=0)


def _schedule(engine, workspace_id, recipients=(), **kwargs) -> int:
    schedule = create_schedule(
        engine, workspace_id=workspace_id, period_type="WEEKLY",
        schedule_day=1, schedule_hour=9, timezone="Asia/Seoul", now=WED_10_KST, **kwargs,
    )
    for email in recipients:
        add_recipient(engine, schedule.id, email)
    return schedule.id


def _dispatcher(engine, store, renderer=None, email=None, chat=None, settings=SETTINGS):
    return ReportDispatcher(
        engine, store, renderer or FakeRenderer(),
        email_channel=email, chat_channel=chat, settings=settings, sleep=lambda s: None,
    )


def _reports(engine) -> list[GeneratedReport]:
    with Session(engine) as session:
        return list(session.scalars(select(GeneratedReport).order_by(GeneratedReport.id)))


def _deliveries(engine) -> list[ReportDelivery]:
    with Session(engine) as session:
        return list(session.scalars(select(ReportDelivery).order_by(ReportDelivery.id)))


def _schedule_row(engine, schedule_id) -> ReportSchedule:
    with Session(engine) as session:
        return session.get(ReportSchedule, schedule_id)


@pytest.fixture
def email():
    return FakeChannel("email", failing={"b@example.com"})


@pytest.fixture
def schedule_id(db_engine, workspace_id):
    return _schedule(
        db_engine, workspace_id,
        recipients=["a@example.com", "b@example.com", "c@example.com"],
    )


class TestNothingDue:

    def test_empty_run_is_success(self, db_engine, store, schedule_id, email):
        batch = _dispatcher(db_engine, store, email=email).run(WED_10_KST)
        assert batch.nothing_due
        assert batch.ok
        assert batch.processed == 0
        assert email.sent == []
        assert _reports(db_engine) == []


class TestEndToEnd:

    def test_weekly_run(self, db_engine, store, workspace_id, schedule_id, email):
        conn = make_connection(db_engine, workspace_id, ChannelProvider.SMARTSTORE)
        store.upsert_records(workspace_id, conn, [
            MetricRecord(date=date(2026, 10, 13), metrics={"revenue": 500, "orders": 2}),
        ])
        renderer = FakeRenderer()

        batch = _dispatcher(db_engine, store, renderer=renderer, email=email).run(MON_09_KST)

        # Reporting window is the previous Monday–Sunday in Seoul
        [payload] = renderer.payloads
        assert payload.period["label"] == "2026년 10/12 ~ 10/18"
        assert payload.has_data

        [report] = _reports(db_engine)
        assert report.status == ReportStatus.GENERATED
        assert ensure_utc(report.period_start) == datetime(2026, 10, 11, 15, 0, tzinfo=UTC)
        assert ensure_utc(report.period_end) == datetime(2026, 10, 18, 15, 0, tzinfo=UTC)

        schedule = _schedule_row(db_engine, schedule_id)
        assert ensure_utc(schedule.last_run_at) == MON_09_KST
        assert ensure_utc(schedule.next_run_at) == NEXT_MON_09_KST

        assert (batch.processed, batch.succeeded, batch.failed) == (1, 1, 0)
        [unit] = batch.units
        assert unit["status"] == "SUCCEEDED"
        assert unit["next_run_at"] == NEXT_MON_09_KST.isoformat()

    def test_partial_delivery_failure(self, db_engine, store, schedule_id, email):
        batch = _dispatcher(db_engine, store, email=email).run(MON_09_KST)

        [unit] = batch.units
        assert (unit["delivered"], unit["delivery_failed"]) == (2, 1)
        [error] = batch.errors
        assert error.kind == BatchErrorKind.DELIVERY_FAILED
        assert error.recipient == "b@example.com"

        deliveries = {d.recipient: d for d in _deliveries(db_engine)}
        assert deliveries["a@example.com"].succeeded
        assert deliveries["c@example.com"].succeeded
        assert not deliveries["b@example.com"].succeeded
        assert deliveries["b@example.com"].attempts == 2
        assert deliveries["a@example.com"].provider_message_id is not None

        # The schedule still moves forward
        schedule = _schedule_row(db_engine, schedule_id)
        assert ensure_utc(schedule.next_run_at) == NEXT_MON_09_KST

    def test_second_tick_does_not_resend(self, db_engine, store, schedule_id, email):
        dispatcher = _dispatcher(db_engine, store, email=email)
        dispatcher.run(MON_09_KST)
        sent = len(email.sent)

        batch = dispatcher.run(MON_09_KST)
        assert batch.nothing_due
        assert len(email.sent) == sent
        assert len(_reports(db_engine)) == 1

    def test_message_content(self, db_engine, store, schedule_id, email):
        settings = DispatchSettings(delivery_max_attempts=1, report_base_url="https://app.example.com/")
        _dispatcher(db_engine, store, email=email, settings=settings).run(MON_09_KST)

        message = email.sent[0]
        [report] = _reports(db_engine)
        assert message.subject == "[Tally] Acme - 2026년 10/12 ~ 10/18 주간 리포트"
        assert message.attachment == b"%PDF-1.7 fake"
        assert message.attachment_filename.endswith(".pdf")
        assert f"https://app.example.com/workspaces/{report.workspace_id}/reports/{report.id}" \
            in message.text

    def test_chat_webhook(self, db_engine, store, workspace_id, email):
        _schedule(
            db_engine, workspace_id, chat_enabled=True,
            chat_webhook_url="https://hooks.example.com/T0/B0",
        )
        chat = FakeChannel("chat")
        batch = _dispatcher(db_engine, store, email=email, chat=chat).run(MON_09_KST)

        [message] = chat.sent
        assert message.recipient == "https://hooks.example.com/T0/B0"
        assert message.attachment is None
        assert batch.units[0]["delivered"] == 1
        [delivery] = _deliveries(db_engine)
        assert delivery.channel == "chat"

    def test_email_disabled_sends_nothing(self, db_engine, store, workspace_id, email):
        _schedule(db_engine, workspace_id, recipients=["a@example.com"], email_enabled=False)
        batch = _dispatcher(db_engine, store, email=email).run(MON_09_KST)
        assert email.sent == []
        assert batch.succeeded == 1

    def test_missing_email_channel_recorded(self, db_engine, store, schedule_id):
        batch = _dispatcher(db_engine, store, email=None).run(MON_09_KST)
        assert batch.units[0]["delivery_failed"] == 3
        assert all(d.attempts == 0 and not d.succeeded for d in _deliveries(db_engine))

    def test_json_renderer_artifact(self, db_engine, store, schedule_id, email):
        _dispatcher(db_engine, store, renderer=JsonRenderer(), email=email).run(MON_09_KST)
        message = email.sent[0]
        assert message.attachment.startswith(b"{")
        assert message.attachment_filename.endswith(".json")


class TestRenderFailure:

    def _assert_render_failed(self, engine, batch, schedule_id, email):
        [unit] = batch.units
        assert unit["status"] == "RENDER_FAILED"
        assert batch.errors[0].kind == BatchErrorKind.RENDER_FAILED
        assert batch.failed == 1
        assert email.sent == []

        [report] = _reports(engine)
        assert report.status == ReportStatus.FAILED
        assert report.error

        schedule = _schedule_row(engine, schedule_id)
        assert schedule.last_run_at is None
        assert ensure_utc(schedule.next_run_at) == NEXT_MON_09_KST

    def test_unsuccessful_result(self, db_engine, store, schedule_id, email):
        renderer = FakeRenderer(RenderResult(success=False, error="chrome crashed"))
        batch = _dispatcher(db_engine, store, renderer=renderer, email=email).run(MON_09_KST)
        self._assert_render_failed(db_engine, batch, schedule_id, email)
        assert _reports(db_engine)[0].error == "chrome crashed"

    def test_renderer_raises(self, db_engine, store, schedule_id, email):
        renderer = FakeRenderer(exc=OSError("no fonts"))
        batch = _dispatcher(db_engine, store, renderer=renderer, email=email).run(MON_09_KST)
        self._assert_render_failed(db_engine, batch, schedule_id, email)

    def test_empty_artifact(self, db_engine, store, schedule_id, email):
        renderer = FakeRenderer(RenderResult(success=True, artifact=b""))
        batch = _dispatcher(db_engine, store, renderer=renderer, email=email).run(MON_09_KST)
        self._assert_render_failed(db_engine, batch, schedule_id, email)

    def test_timeout(self, db_engine, store, schedule_id, email):
        release = threading.Event()
        render_threads: list[threading.Thread] = []

        class SlowRenderer(FakeRenderer):
            def render(self, payload):
                render_threads.append(threading.current_thread())
                release.wait(5)
                return super().render(payload)

        settings = DispatchSettings(render_timeout=0.05, delivery_max_attempts=1)
        dispatcher = _dispatcher(
            db_engine, store, renderer=SlowRenderer(), email=email, settings=settings
        )
        try:
            batch = dispatcher.run(MON_09_KST)
        finally:
            release.set()
        self._assert_render_failed(db_engine, batch, schedule_id, email)
        assert "timed out" in batch.errors[0].message
        # An abandoned renderer must not keep the process alive at exit
        assert render_threads and render_threads[0].daemon


class TestFailureIsolation:

    def test_schedule_update_failure_is_critical(
        self, db_engine, store, schedule_id, email, caplog
    ):
        with (
            patch.object(report_service, "compute_next_run", side_effect=RuntimeError("db gone")),
            caplog.at_level(logging.CRITICAL, logger="tally.services.report_service"),
        ):
            batch = _dispatcher(db_engine, store, email=email).run(MON_09_KST)

        [unit] = batch.units
        assert unit["status"] == "FAILED"
        assert BatchErrorKind.SCHEDULE_UPDATE_FAILED in {e.kind for e in batch.errors}
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)
        # Deliveries went out before the update failed
        assert len(_deliveries(db_engine)) == 3

    def test_one_schedule_crash_does_not_stop_others(self, db_engine, store, email):
        first_ws = make_workspace(db_engine, "First")
        second_ws = make_workspace(db_engine, "Second")
        first = _schedule(db_engine, first_ws, recipients=["a@example.com"])
        second = _schedule(db_engine, second_ws, recipients=["c@example.com"])

        real = report_service.build_report_payload

        def flaky(store_, workspace_id, *args, **kwargs):
            if workspace_id == first_ws:
                raise RuntimeError("payload exploded")
            return real(store_, workspace_id, *args, **kwargs)

        with patch.object(report_service, "build_report_payload", side_effect=flaky):
            batch = _dispatcher(db_engine, store, email=email).run(MON_09_KST)

        assert (batch.processed, batch.succeeded, batch.failed) == (2, 1, 1)
        failed = [e for e in batch.errors if e.kind == BatchErrorKind.UNIT_FAILED]
        assert [e.unit_id for e in failed] == [str(first)]
        assert ensure_utc(_schedule_row(db_engine, second).next_run_at) == NEXT_MON_09_KST

    def test_batch_boundary_failure_propagates(self, db_engine, store, email):
        with patch.object(
            report_service, "list_due_schedules", side_effect=RuntimeError("db down")
        ):
            with pytest.raises(RuntimeError):
                _dispatcher(db_engine, store, email=email).run(MON_09_KST)


class TestSendTestReport:

    def test_sends_without_audit_rows(self, db_engine, store, workspace_id, schedule_id, email):
        dispatcher = _dispatcher(db_engine, store, email=email)
        attempt = dispatcher.send_test_report(
            workspace_id, "WEEKLY", "tester@example.com", now=WED_10_KST
        )
        assert attempt.success
        [message] = email.sent
        assert message.subject.startswith("[테스트]")
        assert "10/12 ~ 10/18" in message.subject
        assert _reports(db_engine) == []
        assert ensure_utc(_schedule_row(db_engine, schedule_id).next_run_at) == MON_09_KST

    def test_without_email_channel(self, db_engine, store, workspace_id):
        attempt = _dispatcher(db_engine, store).send_test_report(
            workspace_id, "MONTHLY", "tester@example.com", now=WED_10_KST
        )
        assert not attempt.success
        assert attempt.attempts == 0


class TestManualGeneration:

    def test_explicit_window_delivered(self, db_engine, store, schedule_id, email):
        dispatcher = _dispatcher(db_engine, store, email=email)
        result = dispatcher.generate_manual(
            schedule_id, date(2026, 10, 5), date(2026, 10, 12), now=WED_10_KST
        )

        assert result.status == RunStatus.SUCCEEDED
        assert (result.delivered, result.delivery_failed) == (2, 1)
        [report] = _reports(db_engine)
        assert report.status == ReportStatus.GENERATED
        assert ensure_utc(report.period_start) == datetime(2026, 10, 4, 15, 0, tzinfo=UTC)
        assert ensure_utc(report.period_end) == datetime(2026, 10, 11, 15, 0, tzinfo=UTC)
        assert len(_deliveries(db_engine)) == 3
        assert "10/5 ~ 10/11" in email.sent[0].subject

    def test_schedule_untouched(self, db_engine, store, schedule_id, email):
        _dispatcher(db_engine, store, email=email).generate_manual(
            schedule_id, date(2026, 10, 5), date(2026, 10, 12), now=WED_10_KST
        )
        schedule = _schedule_row(db_engine, schedule_id)
        assert schedule.last_run_at is None
        assert ensure_utc(schedule.next_run_at) == MON_09_KST

    def test_render_failure_recorded_without_advancing(self, db_engine, store, schedule_id, email):
        renderer = FakeRenderer(RenderResult(success=False, error="no fonts"))
        result = _dispatcher(db_engine, store, renderer=renderer, email=email).generate_manual(
            schedule_id, date(2026, 10, 5), date(2026, 10, 12), now=WED_10_KST
        )
        assert result.status == RunStatus.RENDER_FAILED
        assert [r.status for r in _reports(db_engine)] == [ReportStatus.FAILED]
        assert ensure_utc(_schedule_row(db_engine, schedule_id).next_run_at) == MON_09_KST
        assert email.sent == []

    def test_reversed_window_rejected(self, db_engine, store, schedule_id, email):
        with pytest.raises(ValueError):
            _dispatcher(db_engine, store, email=email).generate_manual(
                schedule_id, date(2026, 10, 12), date(2026, 10, 5)
            )
        assert _reports(db_engine) == []

    def test_unknown_schedule(self, db_engine, store, email):
        with pytest.raises(LookupError):
            _dispatcher(db_engine, store, email=email).generate_manual(
                404, date(2026, 10, 5), date(2026, 10, 12)
            )


class TestReportHistory:

    @pytest.fixture
    def report_ids(self, db_engine, workspace_id):
        other = make_workspace(db_engine, name="Other")
        rows = [
            (workspace_id, "WEEKLY", ReportStatus.GENERATED),
            (workspace_id, "MONTHLY", ReportStatus.GENERATED),
            (workspace_id, "WEEKLY", ReportStatus.FAILED),
            (other, "WEEKLY", ReportStatus.GENERATED),
            (workspace_id, "WEEKLY", ReportStatus.GENERATED),
        ]
        ids = []
        with Session(db_engine) as session:
            for ws, period, status in rows:
                report = GeneratedReport(
                    workspace_id=ws, period_type=period, status=status,
                    period_start=WED_10_KST, period_end=MON_09_KST, generated_at=MON_09_KST,
                )
                session.add(report)
                session.flush()
                ids.append(report.id)
            session.commit()
        return ids

    def test_newest_first_for_workspace(self, db_engine, workspace_id, report_ids):
        page = report_service.list_report_history(db_engine, workspace_id)
        assert [r["id"] for r in page["reports"]] == [
            report_ids[4], report_ids[2], report_ids[1], report_ids[0],
        ]
        assert page["has_more"] is False
        assert page["next_cursor"] is None
        assert page["reports"][1]["status"] == ReportStatus.FAILED

    def test_cursor_pagination(self, db_engine, workspace_id, report_ids):
        first = report_service.list_report_history(db_engine, workspace_id, limit=3)
        assert first["has_more"] is True
        assert first["next_cursor"] == report_ids[1]

        second = report_service.list_report_history(
            db_engine, workspace_id, limit=3, cursor=first["next_cursor"]
        )
        assert [r["id"] for r in second["reports"]] == [report_ids[0]]
        assert second["has_more"] is False

    def test_period_type_filter(self, db_engine, workspace_id, report_ids):
        page = report_service.list_report_history(db_engine, workspace_id, period_type="MONTHLY")
        assert [r["id"] for r in page["reports"]] == [report_ids[1]]

    def test_limit_clamped(self, db_engine, workspace_id, report_ids):
        page = report_service.list_report_history(db_engine, workspace_id, limit=0)
        assert len(page["reports"]) == 1
        assert page["has_more"] is True

    def test_deliveries_included(self, db_engine, store, workspace_id, schedule_id, email):
        _dispatcher(db_engine, store, email=email).run(MON_09_KST)
        [report] = report_service.list_report_history(db_engine, workspace_id)["reports"]
        assert report["schedule_id"] == schedule_id
        assert report["period_start"] == "2026-10-11T15:00:00+00:00"
        assert sorted(d["succeeded"] for d in report["deliveries"]) == [False, True, True]
