import unittest
import urllib.parse

from mailrelay.normalize.normalized_event import build_normalized_event
from mailrelay.providers.adapter import FetchError, ListingError
from mailrelay.providers.m365_graph_adapter import M365GraphAdapter
from mailrelay.transport.http import HttpResponse
from tests.fakes import RecordingHttpCall, json_response


GRAPH = "https://graph.test/v1.0"

MIME = (
    b"From: =?UTF-8?Q?J=C3=BCrgen?= <juergen@example.org>\r\n"
    b"To: inbox@university.edu\r\n"
    b"Subject: Quarterly report\r\n"
    b"Date: Wed, 04 Mar 2026 08:00:00 +0000\r\n"
    b"MIME-Version: 1.0\r\n"
    b'Content-Type: multipart/alternative; boundary="b1"\r\n'
    b"\r\n"
    b"--b1\r\n"
    b"Content-Type: text/plain; charset=iso-8859-1\r\n"
    b"Content-Transfer-Encoding: quoted-printable\r\n"
    b"\r\n"
    b"Gr=FC=DFe aus M=FCnchen\r\n"
    b"--b1\r\n"
    b"Content-Type: text/html; charset=utf-8\r\n"
    b"\r\n"
    b"<p>ignored</p>\r\n"
    b"--b1--\r\n"
)


class TestM365GraphAdapter(unittest.TestCase):
    def test_list_unread_filters_inbox_by_is_read(self) -> None:
        http = RecordingHttpCall()
        http.route(
            "GET",
            f"{GRAPH}/users/inbox@university.edu/mailFolders/Inbox/messages?",
            json_response({"value": [{"id": "AAMk1"}, {"id": "AAMk2"}]}),
        )
        adapter = M365GraphAdapter(base_url=GRAPH, http_call=http)

        ids = adapter.list_unread_ids(access_token="t", mailbox_address="inbox@university.edu", limit=10)

        self.assertEqual(ids, ["AAMk1", "AAMk2"])
        query = urllib.parse.parse_qs(urllib.parse.urlparse(http.calls[0]["url"]).query)
        self.assertEqual(query["$filter"], ["isRead eq false"])
        self.assertEqual(query["$top"], ["10"])

    def test_listing_http_error_raises_listing_error(self) -> None:
        http = RecordingHttpCall()
        http.route("GET", f"{GRAPH}/users/", HttpResponse(status=503, body=b"busy"))
        adapter = M365GraphAdapter(base_url=GRAPH, http_call=http)

        with self.assertRaises(ListingError):
            adapter.list_unread_ids(access_token="t", mailbox_address="inbox@university.edu", limit=10)

    def test_fetch_parses_mime_and_decodes_charset(self) -> None:
        http = RecordingHttpCall()
        http.route(
            "GET",
            f"{GRAPH}/users/inbox@university.edu/messages/AAMk1/$value",
            HttpResponse(status=200, body=MIME),
        )
        adapter = M365GraphAdapter(base_url=GRAPH, http_call=http)

        msg = adapter.fetch_message(access_token="t", mailbox_address="inbox@university.edu", message_id="AAMk1")
        event = build_normalized_event(msg)

        self.assertEqual(http.calls[0]["headers"]["Accept"], "message/rfc822")
        self.assertIn("Jürgen", event.sender)
        self.assertEqual(event.sender_address, "juergen@example.org")
        self.assertEqual(event.subject, "Quarterly report")
        self.assertEqual(event.timestamp, "2026-03-04T08:00:00Z")
        self.assertEqual(event.body_text, "Grüße aus München")

    def test_empty_mime_content_is_a_fetch_error(self) -> None:
        http = RecordingHttpCall()
        http.route("GET", f"{GRAPH}/users/", HttpResponse(status=200, body=b""))
        adapter = M365GraphAdapter(base_url=GRAPH, http_call=http)

        with self.assertRaises(FetchError):
            adapter.fetch_message(access_token="t", mailbox_address="inbox@university.edu", message_id="x")


if __name__ == "__main__":
    unittest.main()
