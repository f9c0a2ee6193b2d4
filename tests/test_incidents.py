"""
Tests for the incident ledger.
"""

import pydantic
import pytest
from sqlalchemy import select

from ledgersync.errors import ConflictError, IntegrityWarningKind, NotFoundError
from ledgersync.models import AuditAction, AuditLog, IncidentCategory, Severity, TriggeredBy
from ledgersync.services.incidents import (
    DataIntegrity,
    LifecycleRejected,
    SweepItemFailed,
    WebhookSignatureInvalid,
    flag_sale_error,
    list_open_incidents,
    parse_incident_details,
    record_incident,
    resolve_incident,
)


class TestDetails:

    def test_parse_by_category(self):
        details = parse_incident_details({
            "category": "sweep_item_failed",
            "sweep_pass": "new_invoices",
            "external_invoice_id": "inv-1",
            "error_code": "LEDGER_UNAVAILABLE",
            "error": "timeout",
        })

        assert isinstance(details, SweepItemFailed)
        assert details.sale_id is None

    def test_unknown_category_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            parse_incident_details({"category": "something_else"})

    def test_extra_fields_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            WebhookSignatureInvalid(signature_present=False, body_length=0, surprise=True)

    def test_every_category_has_a_model(self):
        samples = [
            {"category": "webhook_signature_invalid", "signature_present": False, "body_length": 1},
            {"category": "webhook_event_failed", "error_code": "X", "error": "x"},
            {"category": "sweep_item_failed", "sweep_pass": "awaiting_payment", "error_code": "X", "error": "x"},
            {"category": "lifecycle_rejected", "sale_id": 1, "operation": "op", "to_status": "locked", "reason": "r"},
            {
                "category": "ledger_void_after_payment",
                "sale_id": 1,
                "external_invoice_id": "inv-1",
                "internal_status": "locked",
                "external_status": "VOIDED",
            },
            {"category": "data_integrity", "sale_id": 1, "kinds": ["negative_margin"]},
            {"category": "claim_owner_assignment_skipped", "sale_id": 1, "buyer_id": 2, "claimant_id": "s"},
        ]
        parsed = {parse_incident_details(sample).category for sample in samples}

        assert parsed == {c.value for c in IncidentCategory}


class TestRecordAndResolve:

    @pytest.mark.asyncio
    async def test_record_uses_default_severity(self, db_session):
        record = await record_incident(
            db_session,
            DataIntegrity(sale_id=1, kinds=[IntegrityWarningKind.NEGATIVE_MARGIN]),
            messages="Gross margin is negative",
            source="economics",
            triggered_by=TriggeredBy.API,
        )

        assert record.severity == Severity.LOW
        assert record.message == ["Gross margin is negative"]
        assert record.details["kinds"] == ["negative_margin"]

    @pytest.mark.asyncio
    async def test_resolve_twice_conflicts(self, db_session, sale_factory, finance_actor, fetch_sale):
        sale = await sale_factory()
        await flag_sale_error(db_session, sale.id, "bad")
        record = await record_incident(
            db_session,
            LifecycleRejected(sale_id=sale.id, operation="lock_paid_sales", to_status="locked", reason="bad"),
            messages="bad",
            source="lifecycle",
            triggered_by=TriggeredBy.LIFECYCLE,
            sale_id=sale.id,
        )
        await db_session.commit()

        resolved = await resolve_incident(
            db_session, record.id, finance_actor, notes="checked", clear_sale_flag=True
        )
        await db_session.commit()

        assert resolved.resolved
        assert resolved.resolved_by == "fin-1"
        assert resolved.resolved_notes == "checked"
        assert not (await fetch_sale(sale.id)).error_flag

        audit = await db_session.scalar(
            select(AuditLog).where(AuditLog.action == AuditAction.RESOLVE_ERROR)
        )
        assert audit.target_id == record.id

        with pytest.raises(ConflictError):
            await resolve_incident(db_session, record.id, finance_actor)

    @pytest.mark.asyncio
    async def test_resolve_missing(self, db_session, finance_actor):
        with pytest.raises(NotFoundError):
            await resolve_incident(db_session, 404, finance_actor)

    @pytest.mark.asyncio
    async def test_list_open_only(self, db_session, finance_actor):
        for addr in ("1.1.1.1", "2.2.2.2"):
            await record_incident(
                db_session,
                WebhookSignatureInvalid(signature_present=False, body_length=0, remote_addr=addr),
                messages="bad signature",
                source="webhooks",
                triggered_by=TriggeredBy.WEBHOOK,
            )
        first = (await list_open_incidents(db_session))[0]
        await resolve_incident(db_session, first.id, finance_actor)

        remaining = await list_open_incidents(
            db_session, category=IncidentCategory.WEBHOOK_SIGNATURE_INVALID
        )
        assert [r.id for r in remaining] != [first.id]
        assert len(remaining) == 1

    @pytest.mark.asyncio
    async def test_flag_appends_messages(self, db_session, sale_factory, fetch_sale):
        sale = await sale_factory()

        await flag_sale_error(db_session, sale.id, "first")
        await flag_sale_error(db_session, sale.id, "second")
        await db_session.commit()

        stored = await fetch_sale(sale.id)
        assert stored.error_flag
        assert stored.error_messages == ["first", "second"]
