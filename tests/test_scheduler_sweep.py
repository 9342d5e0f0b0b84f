import unittest

from mailrelay.scheduler.main import poll_all_connections
from mailrelay.transport.http import HttpResponse
from mailrelay.vault.oauth_refresh import RefreshError
from tests.fakes import TOKEN_URL, Harness, route_gmail


class TestSchedulerSweep(unittest.TestCase):
    def test_failing_mailbox_does_not_stop_the_sweep(self) -> None:
        h = Harness()
        h.connect(user_id="u1", mailbox="a@example.org")
        h.connect(user_id="u2", mailbox="b@example.org", expires_in_seconds=-1)
        h.connect(user_id="u3", mailbox="c@example.org")
        h.http.route("POST", TOKEN_URL, HttpResponse(status=400, body=b"{}"))
        route_gmail(h.http, unread=[], messages={})

        failures = []
        outcomes = poll_all_connections(
            store=h.store,
            runner=h.runner,
            on_error=lambda conn, err: failures.append((conn.mailbox_address, type(err))),
        )

        self.assertEqual([o.mailbox_address for o in outcomes], ["a@example.org", "c@example.org"])
        self.assertTrue(all(o.outcome == "initialized" for o in outcomes))
        self.assertEqual(failures, [("b@example.org", RefreshError)])


if __name__ == "__main__":
    unittest.main()
