import json
import unittest

import jsonschema

from mailrelay.normalize.normalized_event import NormalizedEvent
from mailrelay.pipeline.dedup_ledger import DedupLedger
from mailrelay.relay.dispatcher import RelayConfig, RelayContext, RelayDispatcher
from mailrelay.relay.event_contract import validate_relay_event
from mailrelay.store.ingestion_store import InMemoryIngestionStore
from mailrelay.store.models import STATUS_ERROR, STATUS_SENT, TenantRef
from mailrelay.transport.http import HttpResponse, TransportError
from tests.fakes import WEBHOOK_URL, RecordingHttpCall


def _event(**overrides) -> NormalizedEvent:
    fields = dict(
        message_id="m1",
        sender='"Alice" <alice@example.org>',
        sender_address="alice@example.org",
        recipient="Admissions <inbox@university.edu>",
        subject="Hello",
        date="Tue, 03 Mar 2026 10:15:00 +0100",
        timestamp="2026-03-03T09:15:00Z",
        body_text="Hi there",
    )
    fields.update(overrides)
    return NormalizedEvent(**fields)


class _BrokenStore(InMemoryIngestionStore):
    def find_user_id_for_mailbox(self, *, mailbox_address):
        raise RuntimeError("store offline")

    def find_tenant_by_contact_domain(self, *, domain):
        raise RuntimeError("store offline")


class TestRelayDispatcher(unittest.TestCase):
    def _dispatcher(self, store, http) -> RelayDispatcher:
        return RelayDispatcher(config=RelayConfig(webhook_url=WEBHOOK_URL), store=store, http_call=http)

    def test_context_resolves_tenant_from_recipient_domain(self) -> None:
        store = InMemoryIngestionStore()
        store.add_tenant_contact(tenant=TenantRef(tenant_id="t-42", name="University"), contact_email="dean@University.edu")
        d = self._dispatcher(store, RecordingHttpCall())

        ctx = d.resolve_context(event=_event(), mailbox_address="inbox@university.edu")

        self.assertEqual(ctx.tenant, TenantRef(tenant_id="t-42", name="University"))
        self.assertEqual(ctx.user_id, "unknown")

    def test_context_falls_back_to_unknown_on_lookup_errors(self) -> None:
        d = self._dispatcher(_BrokenStore(), RecordingHttpCall())

        ctx = d.resolve_context(event=_event(), mailbox_address="inbox@university.edu")

        self.assertEqual(ctx.user_id, "unknown")
        self.assertEqual(ctx.tenant.tenant_id, "unknown")
        self.assertEqual(ctx.tenant.name, "Unknown Tenant")

    def test_empty_tenant_fields_fall_back_to_sentinels(self) -> None:
        store = InMemoryIngestionStore()
        store.add_tenant_contact(tenant=TenantRef(tenant_id="t1", name=""), contact_email="dean@university.edu")
        http = RecordingHttpCall()
        http.route("POST", WEBHOOK_URL, HttpResponse(status=200, body=b""))
        d = self._dispatcher(store, http)

        ctx = d.resolve_context(event=_event(), mailbox_address="inbox@university.edu")
        body = d.build_body(event=_event(), context=ctx, connection_email="inbox@university.edu")
        result = d.dispatch(user_id="u1", mailbox_address="inbox@university.edu", body=body)

        self.assertEqual(ctx.tenant, TenantRef(tenant_id="t1", name="Unknown Tenant"))
        self.assertTrue(result.delivered)
        self.assertEqual(len(http.calls), 1)

    def test_unencodable_text_is_rejected_before_claim(self) -> None:
        store = InMemoryIngestionStore()
        http = RecordingHttpCall()
        d = self._dispatcher(store, http)
        ctx = RelayContext(user_id="u1", tenant=TenantRef(tenant_id="t1", name="T"))

        with self.assertRaises(ValueError):
            d.build_body(event=_event(body_text="hi \ud800 there"), context=ctx, connection_email="inbox@university.edu")
        self.assertIsNone(store.get_processed_record(user_id="u1", mailbox_address="inbox@university.edu", message_id="m1"))
        self.assertEqual(http.calls, [])

    def test_claims_go_through_the_shared_ledger(self) -> None:
        store = InMemoryIngestionStore()
        http = RecordingHttpCall()
        http.route("POST", WEBHOOK_URL, HttpResponse(status=200, body=b""))
        claims = []

        class _CountingLedger(DedupLedger):
            def claim(self, *, user_id, mailbox_address, record):
                claims.append((record.message_id, record.status))
                return super().claim(user_id=user_id, mailbox_address=mailbox_address, record=record)

        d = RelayDispatcher(
            config=RelayConfig(webhook_url=WEBHOOK_URL), store=store, ledger=_CountingLedger(store=store), http_call=http
        )
        ctx = RelayContext(user_id="u1", tenant=TenantRef(tenant_id="t1", name="T"))
        d.dispatch(
            user_id="u1",
            mailbox_address="inbox@university.edu",
            body=d.build_body(event=_event(), context=ctx, connection_email="inbox@university.edu"),
        )
        d.record_error(user_id="u1", mailbox_address="inbox@university.edu", message_id="m2", error="boom")

        self.assertEqual(claims, [("m1", STATUS_SENT), ("m2", STATUS_ERROR)])

    def test_body_matches_relay_contract(self) -> None:
        d = self._dispatcher(InMemoryIngestionStore(), RecordingHttpCall())
        ctx = RelayContext(user_id="u1", tenant=TenantRef(tenant_id="t1", name="T"))

        body = d.build_body(event=_event(), context=ctx, connection_email="inbox@university.edu")

        self.assertEqual(body["from"], "alice@example.org")
        self.assertEqual(body["client_id"], "u1")
        self.assertEqual(body["source"], "mailrelay")
        self.assertEqual(body["notification_type"], "new_unread_email")
        validate_relay_event(body)

        with self.assertRaises(jsonschema.ValidationError):
            validate_relay_event({**body, "extra": "x"})
        with self.assertRaises(jsonschema.ValidationError):
            d.build_body(event=_event(message_id=""), context=ctx, connection_email="inbox@university.edu")

    def test_dispatch_claims_then_posts_once(self) -> None:
        store = InMemoryIngestionStore()
        http = RecordingHttpCall()
        http.route("POST", WEBHOOK_URL, HttpResponse(status=202, body=b""))
        d = self._dispatcher(store, http)
        ctx = RelayContext(user_id="u1", tenant=TenantRef(tenant_id="t1", name="T"))
        body = d.build_body(event=_event(), context=ctx, connection_email="inbox@university.edu")

        first = d.dispatch(user_id="u1", mailbox_address="inbox@university.edu", body=body)
        second = d.dispatch(user_id="u1", mailbox_address="inbox@university.edu", body=body)

        self.assertTrue(first.claimed and first.delivered)
        self.assertEqual(first.http_status, 202)
        self.assertFalse(second.claimed)
        self.assertEqual(len(http.calls), 1)
        call = http.calls[0]
        self.assertEqual(call["headers"]["Content-Type"], "application/json")
        self.assertEqual(json.loads(call["body"].decode("utf-8")), body)
        rec = store.get_processed_record(user_id="u1", mailbox_address="inbox@university.edu", message_id="m1")
        self.assertEqual(rec.status, STATUS_SENT)
        self.assertNotIn("content", rec.payload)

    def test_failed_delivery_is_still_recorded_as_sent(self) -> None:
        for responder in (HttpResponse(status=500, body=b"down"), TransportError("refused")):
            store = InMemoryIngestionStore()
            http = RecordingHttpCall()
            http.route("POST", WEBHOOK_URL, responder)
            d = self._dispatcher(store, http)
            body = d.build_body(
                event=_event(),
                context=RelayContext(user_id="u1", tenant=TenantRef(tenant_id="t1", name="T")),
                connection_email="inbox@university.edu",
            )

            result = d.dispatch(user_id="u1", mailbox_address="inbox@university.edu", body=body)

            self.assertTrue(result.claimed)
            self.assertFalse(result.delivered)
            self.assertTrue(result.error)
            rec = store.get_processed_record(user_id="u1", mailbox_address="inbox@university.edu", message_id="m1")
            self.assertEqual(rec.status, STATUS_SENT)

    def test_record_error_is_insert_if_absent(self) -> None:
        store = InMemoryIngestionStore()
        d = self._dispatcher(store, RecordingHttpCall())

        self.assertTrue(d.record_error(user_id="u1", mailbox_address="a@x.org", message_id="m1", error="boom"))
        self.assertFalse(d.record_error(user_id="u1", mailbox_address="a@x.org", message_id="m1", error="again"))
        rec = store.get_processed_record(user_id="u1", mailbox_address="a@x.org", message_id="m1")
        self.assertEqual((rec.status, rec.error_message), (STATUS_ERROR, "boom"))

    def test_empty_webhook_url_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            RelayDispatcher(config=RelayConfig(webhook_url=""), store=InMemoryIngestionStore())


if __name__ == "__main__":
    unittest.main()
