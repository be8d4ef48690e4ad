import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

import jwt
from fastapi.testclient import TestClient

from config import Settings
from main import create_app

TEST_SECRET = "test-secret"


def make_settings(tmpdir):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{os.path.join(tmpdir, 'test.db')}",
        jwt_secret=TEST_SECRET,
        bcrypt_rounds=4,
    )


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        """Fresh database and client for each test"""
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.settings = make_settings(tmpdir.name)
        self.client = self.enterContext(TestClient(create_app(self.settings)))

    def register(self, username="alice", email=None, password="s3cret"):
        return self.client.post(
            "/api/auth/register",
            json={
                "username": username,
                "email": email or f"{username}@example.com",
                "password": password
            }
        )

    def login(self, username="alice", password="s3cret"):
        return self.client.post("/api/auth/login", json={"username": username, "password": password})

    def auth_headers(self, username="alice", password="s3cret"):
        """Register and log in, returning a bearer header. Drops the login cookie."""
        self.register(username=username, password=password)
        response = self.login(username, password)
        self.assertEqual(response.status_code, 200)
        self.client.cookies.clear()
        return {"Authorization": f"Bearer {response.json()['token']}"}

    def add_expense(self, headers, amount, category, date, notes=None):
        response = self.client.post(
            "/api/expenses",
            json={"amount": amount, "category": category, "date": date, "notes": notes},
            headers=headers
        )
        self.assertEqual(response.status_code, 201)
        return response.json()["data"]

    def craft_token(self, exp_delta, user_id=1, username="alice", secret=TEST_SECRET):
        now = datetime.now(timezone.utc)
        payload = {"id": user_id, "username": username, "iat": now - timedelta(hours=2), "exp": now + exp_delta}
        return jwt.encode(payload, secret, algorithm="HS256")


class TestAuth(ApiTestCase):
    def test_home_page(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)

    def test_register_new_user(self):
        response = self.register()
        self.assertEqual(response.status_code, 201)
        user = response.json()["user"]
        self.assertEqual(user["username"], "alice")
        self.assertEqual(user["email"], "alice@example.com")
        self.assertIn("id", user)
        self.assertNotIn("hashed_pass", user)
        self.assertNotIn("s3cret", response.text)

    def test_register_duplicate_username(self):
        self.register(username="alice", email="a1@example.com")
        response = self.register(username="alice", email="a2@example.com")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "duplicate_identity")

    def test_register_duplicate_email(self):
        self.register(username="alice", email="shared@example.com")
        response = self.register(username="bob", email="shared@example.com")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "duplicate_identity")

    def test_register_missing_field(self):
        response = self.client.post("/api/auth/register", json={"username": "alice", "password": "x"})
        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertEqual(body["error"], "invalid_input")
        self.assertIn("email", body["message"])
        self.assertNotIn("details", body)

    def test_register_blank_username(self):
        response = self.register(username="   ", email="blank@example.com")
        self.assertEqual(response.status_code, 400)

    def test_successful_login(self):
        user_id = self.register().json()["user"]["id"]
        response = self.login()
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["user"]["id"], user_id)

        claims = jwt.decode(body["token"], TEST_SECRET, algorithms=["HS256"])
        self.assertEqual(claims["id"], user_id)
        self.assertEqual(claims["username"], "alice")
        self.assertEqual(claims["exp"] - claims["iat"], 3600)

    def test_token_resolves_to_registered_user(self):
        user_id = self.register().json()["user"]["id"]
        token = self.login().json()["token"]
        self.client.cookies.clear()

        response = self.client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["user"]["id"], user_id)

    def test_failed_login_is_indistinguishable(self):
        self.register()
        wrong_password = self.login("alice", "wrong")
        unknown_user = self.login("nobody", "wrong")
        self.assertEqual(wrong_password.status_code, 401)
        self.assertEqual(unknown_user.status_code, 401)
        self.assertEqual(wrong_password.json(), unknown_user.json())
        self.assertEqual(wrong_password.json()["error"], "unauthenticated")

    def test_login_with_padded_username(self):
        response = self.register(username="  bob  ", email="bob@example.com")
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["user"]["username"], "bob")

        self.assertEqual(self.login("  bob  ").status_code, 200)
        self.assertEqual(self.login("bob").status_code, 200)

    def test_login_missing_field(self):
        response = self.client.post("/api/auth/login", json={"username": "alice"})
        self.assertEqual(response.status_code, 400)

    def test_profile_requires_token(self):
        response = self.client.get("/api/auth/profile")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"], "unauthenticated")

    def test_malformed_tokens_rejected(self):
        for header in ("Bearer not-a-token", "Token abc", "Bearer"):
            response = self.client.get("/api/auth/profile", headers={"Authorization": header})
            self.assertEqual(response.status_code, 401, header)

    def test_expired_token_rejected(self):
        self.register()
        token = self.craft_token(timedelta(minutes=-1))
        response = self.client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(response.status_code, 401)

    def test_foreign_signature_rejected(self):
        self.register()
        token = self.craft_token(timedelta(hours=1), secret="someone-else")
        response = self.client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(response.status_code, 401)

    def test_profile_for_vanished_user(self):
        token = self.craft_token(timedelta(hours=1), user_id=999, username="ghost")
        response = self.client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(response.status_code, 404)

    def test_cookie_login_and_logout(self):
        self.register()
        token = self.login().json()["token"]
        self.assertEqual(self.client.get("/api/auth/profile").status_code, 200)

        response = self.client.post("/api/auth/logout")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/api/auth/profile").status_code, 401)

        # no server-side revocation
        response = self.client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(response.status_code, 200)


class TestExpenses(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.headers = self.auth_headers("alice")

    def test_add_expense(self):
        expense = self.add_expense(self.headers, 12.5, "Food", "2024-03-05", "lunch")
        self.assertEqual(expense["amount"], 12.5)
        self.assertEqual(expense["category"], "Food")
        self.assertEqual(expense["date"], "2024-03-05")
        self.assertEqual(expense["notes"], "lunch")
        self.assertIsNotNone(expense["created_at"])

    def test_add_expense_requires_auth(self):
        response = self.client.post(
            "/api/expenses",
            json={"amount": 1, "category": "Food", "date": "2024-03-05"}
        )
        self.assertEqual(response.status_code, 401)

    def test_add_expense_invalid_input(self):
        bad_bodies = [
            {"category": "Food", "date": "2024-03-05"},
            {"amount": 0, "category": "Food", "date": "2024-03-05"},
            {"amount": -3, "category": "Food", "date": "2024-03-05"},
            {"amount": 3, "category": " ", "date": "2024-03-05"},
            {"amount": 3, "category": "Food"},
            {"amount": 3, "category": "Food", "date": "not-a-date"},
            {"amount": "Infinity", "category": "Food", "date": "2024-03-05"},
            {"amount": "NaN", "category": "Food", "date": "2024-03-05"},
        ]
        for body in bad_bodies:
            response = self.client.post("/api/expenses", json=body, headers=self.headers)
            self.assertEqual(response.status_code, 400, body)
            self.assertEqual(response.json()["error"], "invalid_input")

    def test_non_finite_amount_is_not_stored(self):
        self.add_expense(self.headers, 4, "Food", "2024-03-01")
        response = self.client.post(
            "/api/expenses",
            json={"amount": "Infinity", "category": "Food", "date": "2024-03-02"},
            headers=self.headers
        )
        self.assertEqual(response.status_code, 400)

        listing = self.client.get("/api/expenses", headers=self.headers)
        self.assertEqual(listing.status_code, 200)
        self.assertEqual([e["amount"] for e in listing.json()["data"]], [4])
        summary = self.client.get("/api/expenses/summary", params={"month": 3, "year": 2024}, headers=self.headers)
        self.assertEqual(summary.status_code, 200)
        self.assertEqual(summary.json()["data"]["total"], 4)

    def test_update_rejects_non_finite_amount(self):
        expense = self.add_expense(self.headers, 4, "Food", "2024-03-01")
        response = self.client.put(
            f"/api/expenses/{expense['id']}",
            json={"amount": "-Infinity", "category": "Food", "date": "2024-03-01"},
            headers=self.headers
        )
        self.assertEqual(response.status_code, 400)

    def test_add_expense_for_vanished_user(self):
        token = self.craft_token(timedelta(hours=1), user_id=999, username="ghost")
        response = self.client.post(
            "/api/expenses",
            json={"amount": 1, "category": "Food", "date": "2024-03-05"},
            headers={"Authorization": f"Bearer {token}"}
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "not_found")

    def test_null_notes_round_trip(self):
        self.add_expense(self.headers, 3, "Food", "2024-03-05")
        expenses = self.client.get("/api/expenses", headers=self.headers).json()["data"]
        self.assertIsNone(expenses[0]["notes"])

    def test_view_expenses_newest_first(self):
        self.add_expense(self.headers, 1, "Food", "2024-01-10")
        self.add_expense(self.headers, 2, "Food", "2024-03-01")
        self.add_expense(self.headers, 3, "Food", "2024-02-15")

        response = self.client.get("/api/expenses", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        dates = [e["date"] for e in response.json()["data"]]
        self.assertEqual(dates, ["2024-03-01", "2024-02-15", "2024-01-10"])

    def test_view_expenses_by_month(self):
        self.add_expense(self.headers, 1, "Food", "2024-03-10")
        self.add_expense(self.headers, 2, "Food", "2024-04-01")
        self.add_expense(self.headers, 3, "Food", "2023-03-10")

        response = self.client.get("/api/expenses", params={"month": 3, "year": 2024}, headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual([e["amount"] for e in response.json()["data"]], [1])

    def test_view_expenses_empty(self):
        response = self.client.get("/api/expenses", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"], [])

    def test_view_expenses_bad_filter(self):
        for params in ({"month": 3}, {"year": 2024}, {"month": 13, "year": 2024}, {"month": "march", "year": 2024}):
            response = self.client.get("/api/expenses", params=params, headers=self.headers)
            self.assertEqual(response.status_code, 400, params)

    def test_users_only_see_their_own_expenses(self):
        self.add_expense(self.headers, 1, "Food", "2024-03-10")
        bob = self.auth_headers("bob")
        self.add_expense(bob, 99, "Travel", "2024-03-11")

        alice_rows = self.client.get("/api/expenses", headers=self.headers).json()["data"]
        bob_rows = self.client.get("/api/expenses", params={"month": 3, "year": 2024}, headers=bob).json()["data"]
        self.assertEqual([e["amount"] for e in alice_rows], [1])
        self.assertEqual([e["amount"] for e in bob_rows], [99])

    def test_summary(self):
        self.add_expense(self.headers, 10, "Food", "2024-03-01")
        self.add_expense(self.headers, 5, "Food", "2024-03-20")
        self.add_expense(self.headers, 7, "Transport", "2024-03-31")
        self.add_expense(self.headers, 100, "Food", "2024-04-01")
        bob = self.auth_headers("bob")
        self.add_expense(bob, 50, "Food", "2024-03-02")

        response = self.client.get("/api/expenses/summary", params={"month": 3, "year": 2024}, headers=self.headers)
        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["by_category"], {"Food": 15, "Transport": 7})
        self.assertEqual(data["total"], 22)
        self.assertEqual((data["month"], data["year"]), (3, 2024))

    def test_summary_requires_month_and_year(self):
        response = self.client.get("/api/expenses/summary", params={"month": 3}, headers=self.headers)
        self.assertEqual(response.status_code, 400)

    def test_summary_empty_month(self):
        response = self.client.get("/api/expenses/summary", params={"month": 3, "year": 2024}, headers=self.headers)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "not_found")

    def test_edit_expense(self):
        expense = self.add_expense(self.headers, 100, "Food", "2024-03-05", "Test expense")
        response = self.client.put(
            f"/api/expenses/{expense['id']}",
            json={"amount": 150, "category": "Shopping", "date": "2024-03-06"},
            headers=self.headers
        )
        self.assertEqual(response.status_code, 200)
        updated = response.json()["data"]
        self.assertEqual(updated["id"], expense["id"])
        self.assertEqual(updated["amount"], 150)
        self.assertEqual(updated["category"], "Shopping")
        self.assertEqual(updated["date"], "2024-03-06")
        self.assertIsNone(updated["notes"])

    def test_edit_expense_invalid_input(self):
        expense = self.add_expense(self.headers, 100, "Food", "2024-03-05")
        response = self.client.put(f"/api/expenses/{expense['id']}", json={"amount": 5}, headers=self.headers)
        self.assertEqual(response.status_code, 400)

    def test_edit_foreign_expense(self):
        expense = self.add_expense(self.headers, 100, "Food", "2024-03-05")
        bob = self.auth_headers("bob")
        body = {"amount": 1, "category": "Hacked", "date": "2024-03-05"}

        foreign = self.client.put(f"/api/expenses/{expense['id']}", json=body, headers=bob)
        missing = self.client.put("/api/expenses/9999", json=body, headers=bob)
        self.assertEqual(foreign.status_code, 404)
        self.assertEqual(foreign.json(), missing.json())

        rows = self.client.get("/api/expenses", headers=self.headers).json()["data"]
        self.assertEqual(rows[0]["category"], "Food")

    def test_delete_expense(self):
        expense = self.add_expense(self.headers, 75, "Entertainment", "2024-03-05", "Expense to delete")
        response = self.client.delete(f"/api/expenses/{expense['id']}", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["notes"], "Expense to delete")

        rows = self.client.get("/api/expenses", headers=self.headers).json()["data"]
        self.assertEqual(rows, [])

        response = self.client.delete(f"/api/expenses/{expense['id']}", headers=self.headers)
        self.assertEqual(response.status_code, 404)

    def test_delete_foreign_expense(self):
        expense = self.add_expense(self.headers, 75, "Entertainment", "2024-03-05")
        bob = self.auth_headers("bob")

        response = self.client.delete(f"/api/expenses/{expense['id']}", headers=bob)
        self.assertEqual(response.status_code, 404)
        self.assertNotIn("Entertainment", response.text)

        rows = self.client.get("/api/expenses", headers=self.headers).json()["data"]
        self.assertEqual(len(rows), 1)


class TestDebugErrors(ApiTestCase):
    def test_details_only_in_debug(self):
        self.client.app.state.settings = self.settings.model_copy(update={"debug": True})
        response = self.client.post("/api/auth/register", json={"username": "alice"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("details", response.json())


if __name__ == "__main__":
    unittest.main()
