from __future__ import annotations

from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Callable
import json
import unittest

import httpx

from pcapjob.config import ServerConfig, TimeoutConfig
from pcapjob.remote import (
    DownloadError,
    NotFoundError,
    RemoteClient,
    RemoteError,
    TransientPollFault,
    UploadError,
)

BASE_URL = "https://jobs.test:3100"


def make_client(handler: Callable[[httpx.Request], httpx.Response], **server_options: object) -> RemoteClient:
    server = ServerConfig(base_url=BASE_URL, **server_options)  # type: ignore[arg-type]
    return RemoteClient(server, TimeoutConfig(), transport=httpx.MockTransport(handler))


class UploadTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = TemporaryDirectory()
        self.capture = Path(self.temp_dir.name) / "trace.pcap"
        self.capture.write_bytes(b"\xd4\xc3\xb2\xa1" + b"x" * 4096)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_submit_streams_multipart_and_returns_job_id(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"job_id": "J1", "message": "queued"})

        progress: list[tuple[int, int]] = []
        client = make_client(handler)
        job_id = client.submit(
            self.capture,
            "trace.pcap",
            "application/vnd.tcpdump.pcap",
            progress=lambda written, total: progress.append((written, total)),
        )
        client.close()

        self.assertEqual(job_id, "J1")
        request = seen[0]
        self.assertEqual(request.method, "POST")
        self.assertEqual(str(request.url), f"{BASE_URL}/upload")
        self.assertTrue(request.headers["content-type"].startswith("multipart/form-data"))
        body = request.content
        self.assertIn(b'name="pcap_file"', body)
        self.assertIn(b'filename="trace.pcap"', body)
        self.assertIn(b"application/vnd.tcpdump.pcap", body)
        self.assertIn(self.capture.read_bytes(), body)

        total = self.capture.stat().st_size
        self.assertTrue(progress)
        self.assertEqual(progress[-1], (total, total))
        written = [item[0] for item in progress]
        self.assertEqual(written, sorted(written))

    def test_submit_without_content_type_uses_octet_stream(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"job_id": "J2"})

        client = make_client(handler, upload_field="capture")
        self.assertEqual(client.submit(self.capture, "trace.pcap", None), "J2")
        self.assertIn(b'name="capture"', seen[0].content)
        self.assertIn(b"application/octet-stream", seen[0].content)

    def test_submit_http_error(self) -> None:
        client = make_client(lambda request: httpx.Response(500, text="internal boom"))
        with self.assertRaises(UploadError) as ctx:
            client.submit(self.capture, "trace.pcap")
        self.assertEqual(ctx.exception.http_status, 500)
        self.assertEqual(ctx.exception.body_excerpt, "internal boom")
        self.assertIn("HTTP 500", str(ctx.exception))

    def test_submit_missing_job_id(self) -> None:
        for response in (
            httpx.Response(200, json={"status": "ok"}),
            httpx.Response(200, json=["J1"]),
            httpx.Response(200, text="not json"),
        ):
            with self.subTest(body=response.text):
                client = make_client(lambda request, response=response: response)
                with self.assertRaises(UploadError) as ctx:
                    client.submit(self.capture, "trace.pcap")
                self.assertEqual(ctx.exception.reason, "missing job id")

    def test_submit_empty_body(self) -> None:
        client = make_client(lambda request: httpx.Response(200, text=""))
        with self.assertRaisesRegex(UploadError, "empty response body"):
            client.submit(self.capture, "trace.pcap")

    def test_submit_transport_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with self.assertRaisesRegex(UploadError, "connection refused"):
            client.submit(self.capture, "trace.pcap")


class StatusTest(unittest.TestCase):
    def test_parses_status_payload(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"status": "completed", "url": "https://x/J1.json"})

        response = make_client(handler).fetch_status("J1")
        self.assertEqual(str(seen[0].url), f"{BASE_URL}/status/J1")
        self.assertEqual(response.status, "completed")
        self.assertEqual(response.url, "https://x/J1.json")
        self.assertIsNone(response.error)

    def test_unknown_status_is_passed_through(self) -> None:
        client = make_client(lambda request: httpx.Response(200, json={"status": "queued", "extra": 1}))
        self.assertEqual(client.fetch_status("J1").status, "queued")

    def test_non_string_url_and_error_are_absent(self) -> None:
        payloads = [
            {"status": "completed", "url": {"a": 1}, "error": 5},
            {"status": "completed", "url": "", "error": ""},
            {"status": "completed", "url": None, "error": ["x"]},
        ]
        for payload in payloads:
            with self.subTest(payload=payload):
                client = make_client(lambda request, payload=payload: httpx.Response(200, json=payload))
                response = client.fetch_status("J1")
                self.assertEqual(response.status, "completed")
                self.assertIsNone(response.url)
                self.assertIsNone(response.error)

    def test_404_is_not_found(self) -> None:
        client = make_client(lambda request: httpx.Response(404, json={"error": "unknown"}))
        with self.assertRaises(NotFoundError) as ctx:
            client.fetch_status("J1")
        self.assertEqual(ctx.exception.job_id, "J1")
        self.assertIn("not found", str(ctx.exception))

    def test_other_errors_and_bad_bodies_are_transient(self) -> None:
        responses = [
            httpx.Response(503, text="busy"),
            httpx.Response(500),
            httpx.Response(200, text=""),
            httpx.Response(200, text="<html>"),
            httpx.Response(200, json={"url": "https://x"}),
        ]
        for response in responses:
            with self.subTest(status=response.status_code, body=response.text):
                client = make_client(lambda request, response=response: response)
                with self.assertRaises(TransientPollFault):
                    client.fetch_status("J1")

    def test_transport_failure_is_hard_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with self.assertRaises(RemoteError) as ctx:
            make_client(handler).fetch_status("J1")
        self.assertNotIsInstance(ctx.exception, TransientPollFault)
        self.assertEqual(ctx.exception.job_id, "J1")


class DownloadTest(unittest.TestCase):
    def test_download_returns_body(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text="[1,2,3]")

        content = make_client(handler).download("https://results.test/J1.json")
        self.assertEqual(content, "[1,2,3]")
        self.assertEqual(seen[0].method, "GET")
        self.assertEqual(str(seen[0].url), "https://results.test/J1.json")

    def test_download_http_error(self) -> None:
        client = make_client(lambda request: httpx.Response(403, text="AccessDenied"))
        with self.assertRaises(DownloadError) as ctx:
            client.download("https://results.test/J1.json", job_id="J1")
        self.assertEqual(ctx.exception.http_status, 403)
        self.assertEqual(ctx.exception.job_id, "J1")
        self.assertIn("AccessDenied", str(ctx.exception))

    def test_download_empty_body(self) -> None:
        client = make_client(lambda request: httpx.Response(200, content=b""))
        with self.assertRaises(DownloadError) as ctx:
            client.download("https://results.test/J1.json")
        self.assertEqual(ctx.exception.reason, "empty body")


class HttpLoggingTest(unittest.TestCase):
    def test_log_http_emits_request_and_response_events(self) -> None:
        client = make_client(lambda request: httpx.Response(200, text=json.dumps({"status": "processing"})), log_http=True)
        with self.assertLogs("pcapjob", level="INFO") as logs:
            client.fetch_status("J1")
        messages = [record.getMessage() for record in logs.records]
        self.assertEqual(messages, ["http_request", "http_response"])
        self.assertEqual(logs.records[1].extra_fields["status"], 200)


if __name__ == "__main__":
    unittest.main()
