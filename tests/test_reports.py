# tests/test_reports.py

import unittest
from datetime import datetime, timedelta, timezone

from apitest import ApiTestCase

import reports


class ComplianceTests(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.admin_token, _ = self.register("admin", role="admin")
        self.token, _ = self.register("alice")

    def get(self, path, **params):
        return self.client.get(path, params=params, headers=self.auth(self.admin_token))

    def test_requires_admin(self):
        response = self.client.get("/api/reports/compliance", headers=self.auth(self.token))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.client.get("/api/reports/compliance").status_code, 401)

    def test_empty_store_scores_zero(self):
        body = self.get("/api/reports/compliance").json()
        self.assertEqual(body["totalItems"], 0)
        self.assertEqual(body["complianceScore"], 0)

    def test_compliance_score(self):
        items = [self.report(self.token, weight=w).json()["ewaste"] for w in (1, 2, 3)]
        for status in ("assessed", "scheduled", "collected", "recycled"):
            self.client.patch(
                f"/api/ewaste/{items[0]['id']}/status", json={"status": status}, headers=self.auth(self.admin_token)
            )
        body = self.get("/api/reports/compliance").json()
        self.assertEqual(body["totalItems"], 3)
        self.assertEqual(body["totalWeight"], 6)
        self.assertEqual(body["complianceScore"], 33)
        self.assertEqual(body["statusBreakdown"]["recycled"], {"count": 1, "weight": 1})
        self.assertEqual(body["categoryBreakdown"]["computers"]["count"], 3)
        self.assertEqual(body["environmentalImpact"], {"co2Saved": 0, "landfillWasteReduced": 0})

    def test_date_range(self):
        self.report(self.token)
        now = datetime.now(timezone.utc)
        inside = self.get(
            "/api/reports/compliance",
            startDate=(now - timedelta(days=1)).isoformat(),
            endDate=(now + timedelta(days=1)).isoformat(),
        ).json()
        self.assertEqual(inside["totalItems"], 1)
        before = self.get(
            "/api/reports/compliance",
            startDate=(now - timedelta(days=10)).isoformat(),
            endDate=(now - timedelta(days=5)).isoformat(),
        ).json()
        self.assertEqual(before["totalItems"], 0)
        self.assertEqual(before["complianceScore"], 0)


class AuditTests(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.admin_token, _ = self.register("admin", role="admin")
        self.token, _ = self.register("alice")
        self.bob_token, _ = self.register("bob", department="Chemistry")

    def test_inventory_audit(self):
        self.report(self.token, age=1)
        self.report(self.token, age=10, type="hazardous")
        self.report(self.bob_token, age=4)
        body = self.client.get("/api/reports/inventory-audit", headers=self.auth(self.admin_token)).json()
        self.assertEqual(body["totalItems"], 3)
        self.assertEqual(body["itemsByAge"], {"0-2 years": 1, "3-5 years": 1, "6-8 years": 0, "9+ years": 1})
        self.assertEqual(body["itemsByType"], {"recyclable": 2, "reusable": 0, "hazardous": 1})
        self.assertEqual(body["itemsByStatus"]["reported"], 3)
        self.assertEqual(body["topContributors"][0]["username"], "alice")
        self.assertEqual(body["topContributors"][0]["count"], 2)
        self.assertEqual(body["recommendations"], [
            "Increase assessment capacity to reduce backlog",
            "Prioritize disposal of items older than 9 years",
            "Ensure proper handling of hazardous materials",
        ])

    def test_empty_audit(self):
        body = self.client.get("/api/reports/inventory-audit", headers=self.auth(self.admin_token)).json()
        self.assertEqual(body["totalItems"], 0)
        self.assertEqual(body["recommendations"], [])


class TraceabilityTests(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.admin_token, _ = self.register("admin", role="admin", department="Facilities")
        self.token, _ = self.register("alice")
        self.item = self.report(self.token).json()["ewaste"]

    def test_timeline_follows_recorded_history(self):
        _, vendor = self.register("greencycle", role="vendor")
        self.client.patch(
            f"/api/ewaste/{self.item['id']}/status", json={"status": "assessed"}, headers=self.auth(self.admin_token)
        )
        self.client.patch(
            f"/api/ewaste/{self.item['id']}/status",
            json={"status": "scheduled", "scheduledPickup": "2030-01-15T09:00:00Z", "vendor": vendor["id"]},
            headers=self.auth(self.admin_token),
        )
        body = self.client.get(
            f"/api/reports/traceability/{self.item['id']}", headers=self.auth(self.admin_token)
        ).json()
        self.assertEqual(body["itemId"], self.item["itemId"])
        self.assertEqual(body["currentStatus"], "scheduled")
        actions = [entry["action"] for entry in body["timeline"]]
        self.assertEqual(actions, [
            "Item reported",
            "Status updated to assessed",
            "Status updated to scheduled",
            "Pickup scheduled",
            "Vendor assigned",
        ])
        self.assertEqual(body["timeline"][0]["user"], "alice")
        self.assertEqual(body["timeline"][1]["user"], "admin")
        self.assertEqual(body["timeline"][1]["department"], "Facilities")
        self.assertEqual(body["timeline"][-1]["user"], "greencycle")

    def test_missing_item(self):
        response = self.client.get("/api/reports/traceability/" + "0" * 24, headers=self.auth(self.admin_token))
        self.assertEqual(response.status_code, 404)

    def test_synthesized_timeline_for_items_without_history(self):
        item = self.store.get("ewaste", self.item["id"])
        item["statusHistory"] = []
        item["status"] = "collected"
        report = reports.traceability_report(item, {})
        self.assertEqual([e["status"] for e in report["timeline"]], ["reported", "collected"])
        self.assertEqual(report["timeline"][1]["user"], "System")


class MonthlySummaryTests(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.admin_token, _ = self.register("admin", role="admin")
        self.token, _ = self.register("alice")

    def test_current_month(self):
        self.report(self.token, weight=2, department="Physics")
        self.report(self.token, weight=3, department="Chemistry", category="batteries")
        now = datetime.now(timezone.utc)
        body = self.client.get(
            "/api/reports/monthly-summary",
            params={"year": now.year, "month": now.month},
            headers=self.auth(self.admin_token),
        ).json()
        self.assertEqual(body["period"], {"year": now.year, "month": now.month})
        self.assertEqual(body["totalItems"], 2)
        self.assertEqual(body["totalWeight"], 5)
        self.assertEqual(body["dailyBreakdown"][str(now.day)], {"count": 2, "weight": 5})
        self.assertEqual(set(body["departmentBreakdown"]), {"Physics", "Chemistry"})
        self.assertEqual(body["categoryBreakdown"]["batteries"]["weight"], 3)

    def test_other_month_is_empty(self):
        self.report(self.token)
        body = self.client.get(
            "/api/reports/monthly-summary", params={"year": 2001, "month": 2}, headers=self.auth(self.admin_token)
        ).json()
        self.assertEqual(body["totalItems"], 0)
        self.assertEqual(body["dailyBreakdown"], {})

    def test_invalid_month(self):
        response = self.client.get(
            "/api/reports/monthly-summary", params={"year": 2026, "month": 13}, headers=self.auth(self.admin_token)
        )
        self.assertEqual(response.status_code, 400)


class MonthBoundsTests(unittest.TestCase):

    def test_december_rolls_over(self):
        start, end = reports.month_bounds(2025, 12)
        self.assertEqual(start, datetime(2025, 12, 1, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2026, 1, 1, tzinfo=timezone.utc))


if __name__ == "__main__":
    unittest.main()
