import base64
import importlib
import io
import logging
import os
import sys
import tempfile
import time
import unittest
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest import mock

import requests
from requests.structures import CaseInsensitiveDict

ADMIN_PASSWORD = "correct-horse"
ENV_KEYS = [
    "CLOUDSHARE_STORAGE_ROOT",
    "CLOUDSHARE_DATA_DIR",
    "CLOUDSHARE_LOGS_DIR",
    "CLOUDSHARE_ADMIN_PASSWORD",
    "CLOUDSHARE_UPSTREAM_SSRF_PROTECTION",
    "MAX_UPLOAD_SIZE_MB",
]


def upstream_response(body=b"proxies: []\n", status=200, headers=None):
    response = mock.Mock()
    response.status_code = status
    response.headers = CaseInsensitiveDict(headers or {})
    response.content = body
    response.text = body.decode("utf-8")
    return response


class CloudShareAppTestCase(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name)
        os.environ["CLOUDSHARE_STORAGE_ROOT"] = str(root)
        os.environ["CLOUDSHARE_DATA_DIR"] = str(root / "data")
        os.environ["CLOUDSHARE_LOGS_DIR"] = str(root / "logs")
        os.environ["CLOUDSHARE_ADMIN_PASSWORD"] = ADMIN_PASSWORD
        os.environ["CLOUDSHARE_UPSTREAM_SSRF_PROTECTION"] = "false"
        self._reload_app()

    def tearDown(self):
        self._stop_app()
        self.storage_dir.cleanup()
        for key in ENV_KEYS:
            os.environ.pop(key, None)
        self._purge_modules()

    @staticmethod
    def _purge_modules():
        for module in [name for name in sys.modules if name == "cloudshare" or name.startswith("cloudshare.")]:
            del sys.modules[module]

    def _stop_app(self):
        scheduler = getattr(getattr(self, "app_module", None), "scheduler", None)
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            if isinstance(handler, RotatingFileHandler) and handler.baseFilename.startswith(
                self.storage_dir.name
            ):
                root_logger.removeHandler(handler)
                handler.close()

    def _reload_app(self):
        self._stop_app()
        self._purge_modules()
        self.app_module = importlib.import_module("cloudshare.app")
        self.lifecycle = importlib.import_module("cloudshare.lifecycle")
        self.app = self.app_module.app
        self.app.config.update(TESTING=True)
        self.client = self.app.test_client()

    def admin_headers(self, password=ADMIN_PASSWORD):
        return {"Authorization": f"Bearer {password}"}

    def upload_json(self, **payload):
        payload.setdefault("content", "hello world")
        response = self.client.post("/api/upload", json=payload)
        return response

    def upload_file(self, data=b"%PDF-1.4 test", filename="doc.pdf", content_type="application/pdf", **form):
        form["file"] = (io.BytesIO(data), filename, content_type)
        return self.client.post("/api/upload", data=form, content_type="multipart/form-data")

    def expire_record(self, record_id):
        record = self.lifecycle.load_record(self.app_module.store, record_id)
        record["expiresAt"] = self.lifecycle.isoformat_utc(time.time() - 60)
        self.lifecycle.save_record(self.app_module.store, record)


class UploadAndReadTests(CloudShareAppTestCase):
    def test_text_upload_and_raw_read(self):
        response = self.upload_json(content="hello world", filename="note.txt")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(set(payload), {"id", "url"})
        self.assertEqual(payload["url"], f"/raw/{payload['id']}")

        raw = self.client.get(payload["url"])
        self.assertEqual(raw.status_code, 200)
        self.assertEqual(raw.data, b"hello world")
        self.assertTrue(raw.headers["Content-Type"].startswith("text/plain"))
        self.assertIn("attachment", raw.headers.get("Content-Disposition", ""))
        self.assertIn("note.txt", raw.headers.get("Content-Disposition", ""))
        self.assertEqual(raw.headers["Access-Control-Allow-Origin"], "*")
        raw.close()

        metadata = self.client.get(f"/api/file/{payload['id']}").get_json()
        self.assertEqual(metadata["downloadCount"], 1)
        self.assertEqual(metadata["type"], "text")
        self.assertNotIn("accessLogs", metadata)

    def test_multipart_file_round_trip(self):
        data = b"%PDF-1.4\x00\x01binary"
        response = self.upload_file(data=data)
        self.assertEqual(response.status_code, 200)
        record_id = response.get_json()["id"]

        raw = self.client.get(f"/raw/{record_id}")
        self.assertEqual(raw.status_code, 200)
        self.assertEqual(raw.data, data)
        self.assertEqual(raw.headers["Content-Type"], "application/pdf")
        raw.close()

        metadata = self.client.get(f"/api/file/{record_id}").get_json()
        self.assertEqual(metadata["type"], "file")
        self.assertEqual(metadata["size"], len(base64.b64encode(data)))
        self.assertEqual(metadata["filename"], "doc.pdf")

    def test_multipart_without_file_is_rejected(self):
        response = self.client.post(
            "/api/upload", data={"expiresIn": "1"}, content_type="multipart/form-data"
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "No file")

    def test_media_uploads_are_blocked(self):
        response = self.upload_file(data=b"\x89PNG", filename="cat.png", content_type="image/png")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "File type blocked")

    def test_json_file_uploads_are_rejected(self):
        response = self.upload_json(type="file")
        self.assertEqual(response.status_code, 400)

    def test_invalid_json_body(self):
        response = self.client.post("/api/upload", data="not json", content_type="application/json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "Invalid JSON body")

    def test_oversized_upload_is_rejected(self):
        os.environ["MAX_UPLOAD_SIZE_MB"] = "1"
        self._reload_app()
        response = self.upload_file(data=b"x" * (1024 * 1024 + 1), filename="big.bin",
                                    content_type="application/octet-stream")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "Too large")

    def test_unknown_id_is_not_found(self):
        for path in ("/raw/nope1234", "/sub/nope1234", "/api/file/nope1234"):
            with self.subTest(path=path):
                response = self.client.get(path)
                self.assertEqual(response.status_code, 404)
                self.assertEqual(response.get_json()["error"], "Not found")

    def test_burn_after_read(self):
        record_id = self.upload_json(burnAfterRead=True).get_json()["id"]
        first = self.client.get(f"/raw/{record_id}")
        self.assertEqual(first.status_code, 200)
        first.close()
        self.assertEqual(self.client.get(f"/raw/{record_id}").status_code, 404)
        self.assertEqual(self.client.get(f"/api/file/{record_id}").status_code, 404)

    def test_download_limit(self):
        record_id = self.upload_json(maxDownloads=1).get_json()["id"]
        first = self.client.get(f"/raw/{record_id}")
        self.assertEqual(first.status_code, 200)
        first.close()

        second = self.client.get(f"/raw/{record_id}")
        self.assertEqual(second.status_code, 410)
        self.assertEqual(second.get_json()["error"], "Download limit reached")
        self.assertEqual(self.client.get(f"/api/file/{record_id}").status_code, 200)

    def test_expired_record_is_gone_then_not_found(self):
        record_id = self.upload_json(expiresIn=1).get_json()["id"]
        self.expire_record(record_id)

        gone = self.client.get(f"/raw/{record_id}")
        self.assertEqual(gone.status_code, 410)
        self.assertEqual(gone.get_json()["error"], "File expired")
        self.assertEqual(self.client.get(f"/raw/{record_id}").status_code, 404)

    def test_custom_slug(self):
        response = self.upload_json(customSlug="team-notes")
        self.assertEqual(response.get_json(), {"id": "team-notes", "url": "/raw/team-notes"})

        duplicate = self.upload_json(content="other", customSlug="team-notes")
        self.assertEqual(duplicate.status_code, 400)
        self.assertEqual(duplicate.get_json()["error"], "Custom slug already in use")

        raw = self.client.get("/raw/team-notes")
        self.assertEqual(raw.data, b"hello world")
        raw.close()

    def test_invalid_options_are_rejected(self):
        self.assertEqual(self.upload_json(expiresIn="soon").status_code, 400)
        self.assertEqual(self.upload_json(maxDownloads=-2).status_code, 400)

        response = self.upload_json(expiresIn=10 ** 12)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "Invalid expiresIn")

        response = self.upload_json(customSlug=123)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "Invalid custom slug")

    def test_burned_record_with_oversized_overlay_value_is_delivered(self):
        record_id = self.upload_json(
            content="only once", burnAfterRead=True, subscriptionInfo={"upload": "9" * 400}
        ).get_json()["id"]

        first = self.client.get(f"/raw/{record_id}")
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.data, b"only once")
        self.assertEqual(first.headers["subscription-userinfo"], "upload=0")
        first.close()
        self.assertEqual(self.client.get(f"/raw/{record_id}").status_code, 404)

    def test_raw_applies_subscription_overlay(self):
        record_id = self.upload_json(
            subscriptionInfo={"upload": "1GB", "total": "10GB", "name": "Home"}
        ).get_json()["id"]

        raw = self.client.get(f"/raw/{record_id}")
        self.assertEqual(raw.status_code, 200)
        self.assertEqual(
            raw.headers["subscription-userinfo"], "upload=1073741824; total=10737418240"
        )
        self.assertEqual(raw.headers["Content-Disposition"], "attachment; filename*=UTF-8''Home")
        raw.close()


class SubscriptionRouteTests(CloudShareAppTestCase):
    FEED_URL = "https://upstream.example/sub?token=abc"

    def upload_subscription(self, **info):
        response = self.upload_json(type="subscription", content=self.FEED_URL, subscriptionInfo=info or None)
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["url"], f"/sub/{payload['id']}")
        return payload["id"]

    def test_sub_relays_upstream_and_merges_headers(self):
        record_id = self.upload_subscription(upload="1", total="3", name="My Sub")
        upstream = upstream_response(
            b"proxies:\n- name: a\n",
            headers={
                "subscription-userinfo": "upload=100; download=200; total=300; expire=999",
                "profile-update-interval": "24",
                "content-disposition": "attachment; filename=upstream.yaml",
            },
        )
        with mock.patch("requests.get", return_value=upstream) as get:
            response = self.client.get(f"/sub/{record_id}")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, b"proxies:\n- name: a\n")
        self.assertTrue(response.headers["Content-Type"].startswith("text/plain"))
        self.assertEqual(
            response.headers["subscription-userinfo"],
            "upload=1; total=3; download=200; expire=999",
        )
        self.assertEqual(
            response.headers["content-disposition"], "attachment; filename*=UTF-8''My%20Sub"
        )
        self.assertEqual(response.headers["profile-update-interval"], "24")

        args, kwargs = get.call_args
        self.assertEqual(args[0], self.FEED_URL)
        self.assertEqual(kwargs["headers"]["User-Agent"], "ClashForAndroid/2.5.12")

        metadata = self.client.get(f"/api/file/{record_id}").get_json()
        self.assertEqual(metadata["downloadCount"], 1)

    def test_sub_without_overlay_passes_upstream_headers(self):
        record_id = self.upload_subscription()
        upstream = upstream_response(headers={"subscription-userinfo": "upload=5; total=9"})
        with mock.patch("requests.get", return_value=upstream):
            response = self.client.get(f"/sub/{record_id}")
        self.assertEqual(response.headers["subscription-userinfo"], "upload=5; total=9")
        self.assertNotIn("content-disposition", response.headers)

    def test_upstream_error_status_is_bad_gateway(self):
        record_id = self.upload_subscription()
        with mock.patch("requests.get", return_value=upstream_response(b"", status=500)):
            response = self.client.get(f"/sub/{record_id}")
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.get_json()["error"], "Failed to fetch subscription")

    def test_upstream_network_error_is_bad_gateway(self):
        record_id = self.upload_subscription()
        with mock.patch("requests.get", side_effect=requests.ConnectionError("refused")):
            response = self.client.get(f"/sub/{record_id}")
        self.assertEqual(response.status_code, 502)

    def test_internal_upstream_is_refused_when_protection_enabled(self):
        os.environ["CLOUDSHARE_UPSTREAM_SSRF_PROTECTION"] = "true"
        self._reload_app()
        response = self.upload_json(type="subscription", content="http://127.0.0.1:8080/sub")
        record_id = response.get_json()["id"]
        with mock.patch("requests.get") as get:
            response = self.client.get(f"/sub/{record_id}")
        self.assertEqual(response.status_code, 502)
        get.assert_not_called()

    def test_sub_on_text_record_returns_content(self):
        record_id = self.upload_json(content="plain words").get_json()["id"]
        with mock.patch("requests.get") as get:
            response = self.client.get(f"/sub/{record_id}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, b"plain words")
        get.assert_not_called()

    def test_subscription_upload_requires_url(self):
        response = self.upload_json(type="subscription", content="just text")
        self.assertEqual(response.status_code, 400)


class AdminApiTests(CloudShareAppTestCase):
    def test_login(self):
        ok = self.client.post("/api/admin/login", json={"password": ADMIN_PASSWORD})
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.get_json(), {"success": True})

        wrong = self.client.post("/api/admin/login", json={"password": "nope"})
        self.assertEqual(wrong.status_code, 401)

        malformed = self.client.post("/api/admin/login", data="[", content_type="application/json")
        self.assertEqual(malformed.status_code, 400)

    def test_admin_routes_require_bearer_token(self):
        for method, path in (
            ("get", "/api/admin/records"),
            ("get", "/api/admin/stats"),
            ("post", "/api/admin/cleanup"),
            ("delete", "/api/admin/delete/abc"),
        ):
            with self.subTest(path=path):
                response = getattr(self.client, method)(path)
                self.assertEqual(response.status_code, 401)
                self.assertEqual(response.get_json()["error"], "Unauthorized")
        response = self.client.get("/api/admin/records", headers=self.admin_headers("guess"))
        self.assertEqual(response.status_code, 401)

    def test_empty_password_locks_admin(self):
        os.environ.pop("CLOUDSHARE_ADMIN_PASSWORD")
        self._reload_app()
        response = self.client.post("/api/admin/login", json={"password": ""})
        self.assertEqual(response.status_code, 401)
        response = self.client.get("/api/admin/records", headers={"Authorization": "Bearer "})
        self.assertEqual(response.status_code, 401)

    def test_records_listing_and_filters(self):
        text_id = self.upload_json(filename="todo.txt").get_json()["id"]
        file_id = self.upload_file().get_json()["id"]
        read = self.client.get(f"/raw/{text_id}", headers={"User-Agent": "Tester/1.0"})
        read.close()

        response = self.client.get("/api/admin/records", headers=self.admin_headers())
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["total"], 2)
        by_id = {record["id"]: record for record in payload["records"]}
        self.assertEqual(set(by_id), {text_id, file_id})
        self.assertEqual(by_id[text_id]["accessLogs"][0]["userAgent"], "Tester/1.0")

        response = self.client.get("/api/admin/records?type=file", headers=self.admin_headers())
        self.assertEqual([r["id"] for r in response.get_json()["records"]], [file_id])

        response = self.client.get("/api/admin/records?q=todo", headers=self.admin_headers())
        self.assertEqual([r["id"] for r in response.get_json()["records"]], [text_id])

        response = self.client.get("/api/admin/records?status=bogus", headers=self.admin_headers())
        self.assertEqual(response.status_code, 400)

    def test_delete_and_batch_delete(self):
        first = self.upload_json().get_json()["id"]
        second = self.upload_json().get_json()["id"]
        third = self.upload_json().get_json()["id"]

        response = self.client.delete(f"/api/admin/delete/{first}", headers=self.admin_headers())
        self.assertEqual(response.get_json(), {"success": True})
        self.assertEqual(self.client.get(f"/raw/{first}").status_code, 404)

        response = self.client.post(
            "/api/admin/batch-delete", json={"ids": [second, third]}, headers=self.admin_headers()
        )
        self.assertEqual(response.get_json(), {"deleted": 2, "failed": 0})

        response = self.client.post(
            "/api/admin/batch-delete", json={"ids": "nope"}, headers=self.admin_headers()
        )
        self.assertEqual(response.status_code, 400)

    def test_admin_download_does_not_count_reads(self):
        record_id = self.upload_json(content="admin view", maxDownloads=1).get_json()["id"]
        response = self.client.get(f"/api/admin/download/{record_id}", headers=self.admin_headers())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, b"admin view")
        response.close()

        metadata = self.client.get(f"/api/file/{record_id}").get_json()
        self.assertEqual(metadata["downloadCount"], 0)

    def test_stats_and_cleanup(self):
        stale = self.upload_json(expiresIn=1).get_json()["id"]
        self.upload_file()
        self.expire_record(stale)

        stats = self.client.get("/api/admin/stats", headers=self.admin_headers()).get_json()
        self.assertEqual(stats["total"], 2)
        self.assertEqual(stats["files"], 1)
        self.assertEqual(stats["texts"], 1)
        self.assertEqual(stats["subscriptions"], 0)
        self.assertEqual(stats["expired"], 1)
        self.assertIn("totalSizeHuman", stats)

        first = self.client.post("/api/admin/cleanup", headers=self.admin_headers())
        self.assertEqual(first.get_json(), {"deleted": 1, "errors": 0})
        second = self.client.post("/api/admin/cleanup", headers=self.admin_headers())
        self.assertEqual(second.get_json(), {"deleted": 0, "errors": 0})

    def test_scheduled_cleanup_job(self):
        stale = self.upload_json(expiresIn=1).get_json()["id"]
        self.expire_record(stale)
        self.assertIsNotNone(self.app_module.scheduler.get_job("cleanup_expired_records"))
        self.assertEqual(self.app_module.run_scheduled_cleanup(), {"deleted": 1, "errors": 0})


class PlumbingTests(CloudShareAppTestCase):
    def test_preflight_returns_cors_headers(self):
        response = self.client.open("/api/upload", method="OPTIONS")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")
        self.assertIn("Authorization", response.headers["Access-Control-Allow-Headers"])
        self.assertIn("DELETE", response.headers["Access-Control-Allow-Methods"])

    def test_site_config(self):
        payload = self.client.get("/api/config").get_json()
        self.assertEqual(
            payload,
            {
                "siteName": "CloudShare",
                "telegramBot": "",
                "footerText": "Private file sharing service",
            },
        )

    def test_health_and_request_id(self):
        response = self.client.get("/health", headers={"X-Request-ID": "req-123"})
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["status"], "healthy")
        self.assertEqual(payload["checks"]["store"], "ok")
        self.assertTrue(payload["checks"]["scheduler_running"])
        self.assertEqual(response.headers["X-Request-ID"], "req-123")

    def test_unknown_route_is_json(self):
        response = self.client.get("/does/not/exist")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json(), {"error": "Not Found"})

    def test_log_sanitizer(self):
        self.assertEqual(self.app_module.sanitize_log_value("a\nb\x07"), "a\\nb\\x07")
        self.assertEqual(self.app_module.sanitize_log_value(5), 5)


if __name__ == "__main__":
    unittest.main()
