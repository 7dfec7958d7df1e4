"""Tests for the /health and /certificate endpoints."""

import unittest
from datetime import timedelta

from certmgmt.engine import update_bundle
from certmgmt.policy import IssuancePolicy
from certs.source import LoadedCertificate
from web import create_app


class StaticSource:

    def __init__(self, current=None):
        self.current = current

    def get_certificate(self, client_hello=None):
        return self.current


def client_for(source=None):
    app = create_app(source)
    app.config["TESTING"] = True
    return app.test_client()


class TestHealthEndpoint(unittest.TestCase):

    def setUp(self):
        self.client = client_for()

    def test_health_returns_200(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)

    def test_health_reports_version(self):
        data = self.client.get("/health").get_json()
        self.assertEqual(data["status"], "healthy")
        self.assertEqual(data["version"], "0.1.0")

    def test_unknown_route_is_json_404(self):
        response = self.client.get("/nope")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json(), {"error": "Not found"})


class TestCertificateEndpoint(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        policy = IssuancePolicy(
            common_name="webhook.test",
            dns_names=["webhook.test", "webhook"],
            validity=timedelta(days=10),
            rest=timedelta(hours=1),
        )
        bundle, _ = update_bundle(None, policy)
        cls.loaded = LoadedCertificate.from_pem(bundle.cert, bundle.key)

    def test_no_source_configured(self):
        response = client_for().get("/certificate")
        self.assertEqual(response.status_code, 503)
        self.assertIn("error", response.get_json())

    def test_nothing_loaded(self):
        response = client_for(StaticSource()).get("/certificate")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.get_json()["error"], "No certificate loaded")

    def test_current_certificate(self):
        response = client_for(StaticSource(self.loaded)).get("/certificate")
        self.assertEqual(response.status_code, 200)
        data = response.get_json()
        self.assertEqual(data["subject"], "CN=webhook.test")
        self.assertEqual(data["dns_names"], ["webhook.test", "webhook"])
        self.assertEqual(data["source"], "StaticSource")
        self.assertIn(data["days_remaining"], (9, 10))


if __name__ == "__main__":
    unittest.main()
