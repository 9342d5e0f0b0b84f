import threading
import unittest

from mailrelay.store.models import STATUS_SENT
from tests.fakes import GMAIL_BASE, Harness, gmail_message, json_response


class TestConcurrentAtMostOnce(unittest.TestCase):
    def test_overlapping_invocations_relay_a_message_once(self) -> None:
        workers = 4
        h = Harness()
        conn = h.connect()
        h.mark_initialized()

        # Every invocation has passed the ledger read before any of them claims.
        barrier = threading.Barrier(workers, timeout=5)

        def fetch(call):
            barrier.wait()
            return json_response(gmail_message("m1"))

        h.http.route("GET", f"{GMAIL_BASE}/users/me/messages?", json_response({"messages": [{"id": "m1"}]}))
        h.http.route("GET", f"{GMAIL_BASE}/users/me/messages/m1?", fetch)

        outcomes = []
        errors = []
        lock = threading.Lock()

        def run() -> None:
            try:
                out = h.runner.run_once(connection=conn)
            except Exception as e:  # surfaced through `errors`
                with lock:
                    errors.append(e)
                return
            with lock:
                outcomes.append(out)

        threads = [threading.Thread(target=run) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        self.assertEqual(errors, [])
        self.assertEqual(sorted(o.outcome for o in outcomes), ["already_processed"] * (workers - 1) + ["relayed"])
        self.assertEqual(len(h.relay_posts()), 1)
        records = h.store.records_for(user_id="u1", mailbox_address="u1@example.org")
        self.assertEqual([(r.message_id, r.status) for r in records], [("m1", STATUS_SENT)])

    def test_concurrent_first_contact_bootstraps_once(self) -> None:
        workers = 3
        h = Harness()
        conn = h.connect()
        h.http.route("GET", f"{GMAIL_BASE}/users/me/messages?", json_response({"messages": [{"id": "a"}, {"id": "b"}]}))

        outcomes = []
        lock = threading.Lock()

        def run() -> None:
            out = h.runner.run_once(connection=conn)
            with lock:
                outcomes.append(out)

        threads = [threading.Thread(target=run) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        self.assertEqual(len(outcomes), workers)
        self.assertEqual(sum(o.skipped for o in outcomes if o.outcome == "initialized"), 2)
        self.assertEqual(h.relay_posts(), [])
        self.assertEqual(len(h.store.records_for(user_id="u1", mailbox_address="u1@example.org")), 2)


if __name__ == "__main__":
    unittest.main()
