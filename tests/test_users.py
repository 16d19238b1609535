# tests/test_users.py

import unittest

from apitest import ApiTestCase


class UserTests(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.admin_token, self.admin = self.register("admin", role="admin", department="Facilities")
        self.alice_token, self.alice = self.register("alice", department="Physics")
        self.bob_token, self.bob = self.register("bob", department="Chemistry")
        self.carol_token, self.carol = self.register("carol", department="Physics")
        self.report(self.alice_token, weight=2)
        self.report(self.alice_token, weight=3)
        self.report(self.bob_token, weight=4)

    def test_leaderboard_is_public_and_sorted(self):
        response = self.client.get("/api/users/leaderboard")
        self.assertEqual(response.status_code, 200)
        board = response.json()
        self.assertEqual([u["username"] for u in board[:2]], ["alice", "bob"])
        self.assertEqual(board[0], {
            "id": self.alice["id"],
            "username": "alice",
            "department": "Physics",
            "greenScore": 20,
            "totalContribution": 5,
        })

    def test_leaderboard_limit(self):
        board = self.client.get("/api/users/leaderboard", params={"limit": 1}).json()
        self.assertEqual(len(board), 1)

    def test_department_leaderboard(self):
        board = self.client.get("/api/users/leaderboard/department/Physics").json()
        self.assertEqual([u["username"] for u in board], ["alice", "carol"])

    def test_list_users_requires_admin(self):
        self.assertEqual(self.client.get("/api/users", headers=self.auth(self.alice_token)).status_code, 403)
        users = self.client.get("/api/users", headers=self.auth(self.admin_token)).json()
        self.assertEqual(len(users), 4)
        self.assertEqual(users[0]["username"], "alice")
        self.assertNotIn("password", users[0])

    def test_set_green_score_overwrites(self):
        response = self.client.patch(
            f"/api/users/{self.alice['id']}/green-score", json={"greenScore": 3}, headers=self.auth(self.admin_token)
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["greenScore"], 3)
        self.assertEqual(self.profile(self.alice_token)["greenScore"], 3)

    def test_set_green_score_validation(self):
        url = f"/api/users/{self.alice['id']}/green-score"
        self.assertEqual(self.client.patch(url, json={"greenScore": -5}, headers=self.auth(self.admin_token)).status_code, 400)
        self.assertEqual(self.client.patch(url, json={"greenScore": 5}, headers=self.auth(self.bob_token)).status_code, 403)
        missing = self.client.patch(
            "/api/users/" + "0" * 24 + "/green-score", json={"greenScore": 5}, headers=self.auth(self.admin_token)
        )
        self.assertEqual(missing.status_code, 404)

    def test_stats(self):
        self.assertEqual(self.client.get("/api/users/stats", headers=self.auth(self.bob_token)).status_code, 403)
        body = self.client.get("/api/users/stats", headers=self.auth(self.admin_token)).json()
        self.assertEqual(body["overview"]["totalUsers"], 4)
        self.assertEqual(body["overview"]["totalGreenScore"], 30)
        self.assertEqual(body["overview"]["totalContribution"], 9)
        self.assertEqual(body["overview"]["avgGreenScore"], 7.5)
        by_department = {d["_id"]: d for d in body["departmentStats"]}
        self.assertEqual(by_department["Physics"]["userCount"], 2)
        self.assertEqual(by_department["Physics"]["avgGreenScore"], 10)
        self.assertEqual(by_department["Physics"]["totalContribution"], 5)
        self.assertEqual(body["departmentStats"][-1]["_id"], "Facilities")


if __name__ == "__main__":
    unittest.main()
