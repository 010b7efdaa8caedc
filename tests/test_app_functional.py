import importlib
import io
import logging
import os
import sys
import tempfile
import unittest
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest import mock
from urllib.parse import urlparse

from PIL import Image

sys.path.insert(0, str(Path(__file__).parent.parent))

ENV_KEYS = [
    "IMGHOST_STORAGE_ROOT",
    "IMGHOST_DATA_DIR",
    "IMGHOST_UPLOADS_DIR",
    "IMGHOST_LOGS_DIR",
    "IMGHOST_DOMAIN",
    "SECRET_KEY",
]


def _purge_modules():
    for name in list(sys.modules):
        if name == "imghost" or name.startswith("imghost."):
            del sys.modules[name]


def _png_bytes(size=(400, 300), color=(0, 0, 0)):
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def _noise_png_bytes(width=900, height=900):
    buffer = io.BytesIO()
    Image.frombytes("RGB", (width, height), os.urandom(width * height * 3)).save(
        buffer, format="PNG"
    )
    return buffer.getvalue()


class ImageHostAppIntegrationTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name)
        os.environ["IMGHOST_STORAGE_ROOT"] = str(root)
        os.environ["IMGHOST_DATA_DIR"] = str(root / "data")
        os.environ["IMGHOST_UPLOADS_DIR"] = str(root / "uploads")
        os.environ["IMGHOST_LOGS_DIR"] = str(root / "logs")
        os.environ["IMGHOST_DOMAIN"] = "x02.me"
        os.environ["SECRET_KEY"] = "functional-tests-secret"
        self._reload_app()
        self.app.config.update(TESTING=True)
        self.client = self.app.test_client()

    def tearDown(self):
        self.app_module.scheduler.shutdown(wait=False)
        self.app_module.watermark_queue.shutdown(wait=True)
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            if isinstance(handler, RotatingFileHandler) and handler.baseFilename.startswith(
                self.storage_dir.name
            ):
                root_logger.removeHandler(handler)
                handler.close()
        self.storage_dir.cleanup()
        for key in ENV_KEYS:
            os.environ.pop(key, None)
        _purge_modules()

    def _reload_app(self):
        _purge_modules()
        self.app_module = importlib.import_module("imghost.app")
        self.storage = importlib.import_module("imghost.storage")
        self.security = importlib.import_module("imghost.security")
        self.app = self.app_module.app

    # helpers

    def upload(self, payload=None, *, api_key=None, ip="203.0.113.7", filename="photo.png",
               content_type="image/png"):
        headers = {"X-API-Key": api_key} if api_key else {}
        return self.client.post(
            "/api/upload",
            data={"image": (io.BytesIO(payload or _png_bytes()), filename, content_type)},
            content_type="multipart/form-data",
            headers=headers,
            environ_base={"REMOTE_ADDR": ip},
        )

    def fetch(self, url, **kwargs):
        parsed = urlparse(url)
        response = self.client.get(
            parsed.path, base_url=f"{parsed.scheme}://{parsed.netloc}", **kwargs
        )
        data = response.get_data()
        response.close()
        return response, data

    def register(self, username, password="secret123"):
        response = self.client.post(
            "/api/auth/register", json={"username": username, "password": password}
        )
        self.assertEqual(response.status_code, 201, response.get_json())
        return response.get_json()["data"]

    def admin_headers(self):
        return {"Authorization": f"Bearer {self.security.issue_admin_token('tests')}"}

    # anonymous uploads

    def test_anonymous_upload_round_trip(self):
        payload = _noise_png_bytes()
        self.assertGreater(len(payload), 2 * 1024 * 1024)

        response = self.upload(payload)

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.mimetype.startswith("text/plain"))
        url = response.get_data(as_text=True)
        self.assertRegex(url, r"^https://x02\.me/i/[A-Z2-9]{4,8}\.png$")
        self.assertEqual(response.headers["X-RateLimit-Limit"], "10")
        self.assertEqual(response.headers["X-RateLimit-Remaining"], "9")

        served, data = self.fetch(url)
        self.assertEqual(served.status_code, 200)
        self.assertEqual(served.mimetype, "image/png")
        self.assertEqual(data, payload)
        self.assertIn("max-age=86400", served.headers["Cache-Control"])
        self.assertEqual(served.headers["X-Content-Type-Options"], "nosniff")

    def test_anonymous_quota_rejects_eleventh_upload(self):
        for _ in range(10):
            self.assertEqual(self.upload(ip="198.51.100.20").status_code, 200)

        rejected = self.upload(ip="198.51.100.20")

        self.assertEqual(rejected.status_code, 429)
        body = rejected.get_json()
        self.assertFalse(body["success"])
        self.assertGreater(body["retryAfter"], 0)
        self.assertGreater(int(rejected.headers["Retry-After"]), 0)
        self.assertEqual(rejected.headers["X-RateLimit-Remaining"], "0")

        self.assertEqual(self.upload(ip="198.51.100.21").status_code, 200)

    def test_upload_validation_errors(self):
        not_image = self.upload(b"plain text", filename="notes.txt", content_type="text/plain")
        self.assertEqual(not_image.status_code, 400)
        self.assertFalse(not_image.get_json()["success"])

        missing = self.client.post("/api/upload", data={}, content_type="multipart/form-data")
        self.assertEqual(missing.status_code, 400)

        unknown_key = self.upload(api_key="not-a-real-key")
        self.assertEqual(unknown_key.status_code, 403)

    def test_oversized_upload_is_rejected_without_leftovers(self):
        self.storage.update_config({"max_upload_size_mb": 1})

        response = self.upload(os.urandom(1536 * 1024))

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "File too large")
        leftovers = [path for path in self.storage.INCOMING_DIR.iterdir() if path.suffix == ".tmp"]
        self.assertEqual(leftovers, [])
        self.assertEqual(list(self.storage.ANONYMOUS_DIR.iterdir()), [])

    def test_request_size_cap_follows_config_changes(self):
        payload = _noise_png_bytes(1000, 1000)
        self.assertGreater(len(payload), 2 * self.storage.BYTES_PER_MB)

        self.storage.update_config({"max_upload_size_mb": 1})
        self.assertEqual(self.upload(payload).status_code, 413)
        self.assertEqual(self.app.config["MAX_CONTENT_LENGTH"], 2 * self.storage.BYTES_PER_MB)

        self.storage.update_config({"max_upload_size_mb": 5})
        response = self.upload(payload)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.app.config["MAX_CONTENT_LENGTH"], 6 * self.storage.BYTES_PER_MB)

    def test_path_traversal_is_rejected(self):
        backslash = self.client.get("/i/..%5Cdata%5Cimghost.db")
        self.assertEqual(backslash.status_code, 400)

        slash = self.client.get("/i/../data/imghost.db")
        self.assertIn(slash.status_code, (400, 404))

        hidden = self.client.get("/i/.secret_key")
        self.assertEqual(hidden.status_code, 400)

    # owners

    def test_registered_owner_gets_watermarked_subdomain_url(self):
        data = self.register("alice")
        self.assertEqual(data["baseUrl"], "https://alice.x02.me")
        self.assertEqual(len(data["apiKey"]), 32)

        original = _png_bytes()
        response = self.upload(original, api_key=data["apiKey"])

        self.assertEqual(response.status_code, 200)
        url = response.get_data(as_text=True)
        self.assertTrue(url.startswith("https://alice.x02.me/i/"))

        served, body = self.fetch(url)
        self.assertEqual(served.status_code, 200)
        self.assertNotEqual(body, original)
        with Image.open(io.BytesIO(body)) as image:
            self.assertEqual(image.format, "PNG")
            self.assertEqual(image.size, (400, 300))

        # Owner files are not reachable from the bare domain while subdomains are on.
        bare, _ = self.fetch(url.replace("alice.x02.me", "x02.me"))
        self.assertEqual(bare.status_code, 404)

    def test_async_watermark_is_applied_by_workers(self):
        data = self.register("alice")
        headers = {"X-API-Key": data["apiKey"]}
        settings = self.client.post(
            "/api/user/watermark/settings", json={"async": True, "position": "center"}, headers=headers
        )
        self.assertEqual(settings.status_code, 200)
        self.assertTrue(settings.get_json()["data"]["async"])

        original = _png_bytes()
        response = self.upload(original, api_key=data["apiKey"])
        self.assertEqual(response.status_code, 200)
        self.app_module.watermark_queue.join()

        _, body = self.fetch(response.get_data(as_text=True))
        self.assertNotEqual(body, original)

        dashboard = self.client.get("/api/user/dashboard", headers=headers).get_json()["data"]
        self.assertEqual(dashboard["uploads"][0]["watermark"], "applied")

    def test_watermark_settings_validation(self):
        data = self.register("alice")
        headers = {"X-API-Key": data["apiKey"]}

        invalid = self.client.post(
            "/api/user/watermark/settings", json={"opacity": 2}, headers=headers
        )
        self.assertEqual(invalid.status_code, 400)

        current = self.client.get("/api/user/watermark/settings", headers=headers).get_json()
        self.assertEqual(current["data"]["opacity"], 0.6)
        self.assertEqual(current["data"]["position"], "bottom-right")

    def test_dashboard_reports_quota_usage(self):
        data = self.register("alice")
        headers = {"X-API-Key": data["apiKey"]}
        self.assertEqual(self.upload(api_key=data["apiKey"]).status_code, 200)

        response = self.client.get("/api/user/dashboard", headers=headers)

        self.assertEqual(response.status_code, 200)
        payload = response.get_json()["data"]
        self.assertEqual(payload["quota"]["daily"]["used"], 1)
        self.assertEqual(payload["quota"]["daily"]["remaining"], 99)
        self.assertEqual(payload["quota"]["hourly"]["used"], 1)
        self.assertTrue(payload["subdomainEnabled"])
        self.assertEqual(len(payload["uploads"]), 1)
        self.assertEqual(payload["user"]["usage"]["count"], 1)

        self.assertEqual(self.client.get("/api/user/dashboard").status_code, 401)

    def test_login_returns_existing_key(self):
        data = self.register("alice")

        login = self.client.post("/api/auth/login", json={"username": "alice", "password": "secret123"})
        self.assertEqual(login.status_code, 200)
        self.assertEqual(login.get_json()["data"]["apiKey"], data["apiKey"])

        wrong = self.client.post("/api/auth/login", json={"username": "alice", "password": "nope-nope"})
        self.assertEqual(wrong.status_code, 401)

        duplicate = self.client.post(
            "/api/auth/register", json={"username": "alice", "password": "secret123"}
        )
        self.assertEqual(duplicate.status_code, 409)

    def test_ambiguous_api_keys_are_rejected(self):
        response = self.client.get(
            "/api/user/dashboard?apiKey=first",
            headers={"X-API-Key": "second"},
        )
        self.assertEqual(response.status_code, 400)

    def test_tenant_index_lists_owner_images(self):
        data = self.register("alice")
        self.upload(api_key=data["apiKey"])

        listing = self.client.get("/i", base_url="https://alice.x02.me")
        self.assertEqual(listing.status_code, 200)
        payload = listing.get_json()["data"]
        self.assertEqual(payload["username"], "alice")
        self.assertEqual(payload["count"], 1)

        self.assertEqual(self.client.get("/i", base_url="https://x02.me").status_code, 404)

    # deletion

    def test_anonymous_uploader_can_delete_from_same_ip(self):
        url = self.upload(ip="192.0.2.10").get_data(as_text=True)
        path = urlparse(url).path

        other_ip = self.client.delete(path, environ_base={"REMOTE_ADDR": "192.0.2.11"})
        self.assertEqual(other_ip.status_code, 404)

        deleted = self.client.delete(path, environ_base={"REMOTE_ADDR": "192.0.2.10"})
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(deleted.get_json()["url"], url)

        served, _ = self.fetch(url)
        self.assertEqual(served.status_code, 404)

    def test_owner_cannot_delete_someone_elses_file(self):
        alice = self.register("alice")
        bob = self.register("bob")
        url = self.upload(api_key=alice["apiKey"]).get_data(as_text=True)
        path = urlparse(url).path

        denied = self.client.delete(path, headers={"X-API-Key": bob["apiKey"]})
        self.assertEqual(denied.status_code, 404)

        allowed = self.client.delete(path, headers={"X-API-Key": alice["apiKey"]})
        self.assertEqual(allowed.status_code, 200)

    # administration

    def test_admin_endpoints_require_signed_token(self):
        alice = self.register("alice")

        self.assertEqual(self.client.get("/api/admin/users").status_code, 401)
        garbage = self.client.get("/api/admin/users", headers={"Authorization": "Bearer garbage"})
        self.assertEqual(garbage.status_code, 403)
        user_key = self.client.get(
            "/api/admin/users", headers={"Authorization": f"Bearer {alice['apiKey']}"}
        )
        self.assertEqual(user_key.status_code, 403)

        allowed = self.client.get("/api/admin/users", headers=self.admin_headers())
        self.assertEqual(allowed.status_code, 200)
        self.assertEqual(allowed.get_json()["data"]["count"], 1)

    def test_disabled_mode_and_whitelist_control_subdomain_serving(self):
        headers = self.admin_headers()
        mode = self.client.post("/api/admin/subdomain-mode", json={"mode": "disabled"}, headers=headers)
        self.assertEqual(mode.status_code, 200)
        self.assertEqual(mode.get_json()["data"]["mode"], "disabled")

        bob = self.register("bob")
        self.assertEqual(bob["baseUrl"], "https://x02.me")
        url = self.upload(api_key=bob["apiKey"]).get_data(as_text=True)
        self.assertTrue(url.startswith("https://x02.me/i/"))
        filename = urlparse(url).path.rsplit("/", 1)[-1]

        tenant_url = f"https://bob.x02.me/i/{filename}"
        self.assertEqual(self.fetch(tenant_url)[0].status_code, 404)
        self.assertEqual(self.fetch(url)[0].status_code, 200)

        whitelisted = self.client.post(
            "/api/admin/subdomain-settings",
            json={"username": "bob", "enabled": True},
            headers=headers,
        )
        self.assertEqual(whitelisted.status_code, 200)
        self.assertEqual(whitelisted.get_json()["data"]["overrides"][0]["username"], "bob")
        self.assertEqual(self.fetch(tenant_url)[0].status_code, 200)

        invalid = self.client.post("/api/admin/subdomain-mode", json={"mode": "sometimes"}, headers=headers)
        self.assertEqual(invalid.status_code, 400)

    def test_path_qualified_owner_upload_avoids_names_served_from_other_roots(self):
        headers = self.admin_headers()
        self.client.post("/api/admin/subdomain-mode", json={"mode": "disabled"}, headers=headers)
        bob = self.register("bob")
        anonymous_payload = _png_bytes(color=(255, 0, 0))
        (self.storage.ANONYMOUS_DIR / "AAAA.png").write_bytes(anonymous_payload)
        naming = importlib.import_module("imghost.naming")

        own_payload = _png_bytes(color=(0, 0, 255))
        with mock.patch.object(naming, "random_name", side_effect=["AAAA", "BBBB"]):
            response = self.upload(own_payload, api_key=bob["apiKey"])

        self.assertEqual(response.status_code, 200)
        url = response.get_data(as_text=True)
        self.assertEqual(url, "https://x02.me/i/BBBB.png")
        with Image.open(io.BytesIO(self.fetch(url)[1])) as served:
            self.assertEqual(served.convert("RGB").getpixel((5, 5)), (0, 0, 255))
        self.assertEqual(self.fetch("https://x02.me/i/AAAA.png")[1], anonymous_payload)

    def test_admin_can_update_suspend_and_delete_owner(self):
        headers = self.admin_headers()
        alice = self.register("alice")
        owner_id = alice["user"]["id"]
        url = self.upload(api_key=alice["apiKey"]).get_data(as_text=True)

        patched = self.client.patch(
            f"/api/admin/users/{owner_id}", json={"dailyLimit": 5}, headers=headers
        )
        self.assertEqual(patched.status_code, 200)
        self.assertEqual(patched.get_json()["data"]["dailyLimit"], 5)

        suspended = self.client.patch(
            f"/api/admin/users/{owner_id}", json={"suspended": True}, headers=headers
        )
        self.assertTrue(suspended.get_json()["data"]["suspended"])
        self.assertEqual(self.upload(api_key=alice["apiKey"]).status_code, 403)
        self.assertEqual(self.fetch(url)[0].status_code, 404)

        deleted = self.client.delete(f"/api/admin/users/{owner_id}", headers=headers)
        self.assertEqual(deleted.status_code, 200)
        self.assertFalse((self.storage.USERS_DIR / "alice").exists())
        self.assertEqual(self.fetch(url)[0].status_code, 404)

        missing = self.client.delete(f"/api/admin/users/{owner_id}", headers=headers)
        self.assertEqual(missing.status_code, 404)

    def test_admin_reset_invalidates_old_key(self):
        headers = self.admin_headers()
        alice = self.register("alice")

        reset = self.client.post(f"/api/admin/users/{alice['user']['id']}/reset-api", headers=headers)
        self.assertEqual(reset.status_code, 200)
        new_key = reset.get_json()["data"]["apiKey"]

        self.assertEqual(self.upload(api_key=alice["apiKey"]).status_code, 403)
        self.assertEqual(self.upload(api_key=new_key).status_code, 200)

    def test_admin_analytics_summary(self):
        self.upload()
        response = self.client.get("/api/admin/analytics?days=7", headers=self.admin_headers())
        self.assertEqual(response.status_code, 200)
        self.assertIn("storage", response.get_json()["data"])

        invalid = self.client.get("/api/admin/analytics?days=soon", headers=self.admin_headers())
        self.assertEqual(invalid.status_code, 400)

    # service

    def test_health_endpoint_reports_checks(self):
        response = self.client.get("/health")
        self.assertIn(response.status_code, (200, 503))
        payload = response.get_json()
        self.assertEqual(payload["checks"]["database"], "ok")
        self.assertEqual(payload["checks"]["uploads_writable"], "ok")
        self.assertEqual(payload["checks"]["watermark_workers"], "running")
        self.assertIn("X-Request-ID", response.headers)

    def test_cli_issues_verifiable_admin_token(self):
        runner = self.app.test_cli_runner()
        result = runner.invoke(args=["issue-admin-token", "--subject", "ops"])
        self.assertEqual(result.exit_code, 0)
        claims = self.security.verify_admin_token(result.output.strip())
        self.assertEqual(claims["sub"], "ops")


if __name__ == "__main__":
    unittest.main()
