import unittest
import os
import sys
import json
import tempfile
from unittest.mock import patch

# Add parent directory to path to import app
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import DEFAULT_SECRET_KEY, app, warn_default_secret
from db import get_db_connection, init_db
from nutrition import NutritionError

PASSWORD = "Str0ng!pass"


class AppTestCase(unittest.TestCase):

    def setUp(self):
        self.db_fd, self.db_path = tempfile.mkstemp(suffix=".db")
        app.config.update(TESTING=True, DATABASE=self.db_path)
        init_db(self.db_path)
        app.extensions["rate_limiter"].reset()
        self.client = app.test_client()

    def tearDown(self):
        os.close(self.db_fd)
        os.unlink(self.db_path)

    def register(self, username="alice", password=PASSWORD, confirm=None):
        return self.client.post('/register', data={
            "username": username, "password": password, "confirm": confirm or password
        })

    def login(self, username="alice", password=PASSWORD):
        return self.client.post('/login', data={"username": username, "password": password})

    def register_and_login(self):
        self.register()
        self.login()

    def audit_actions(self):
        conn = get_db_connection(self.db_path)
        try:
            return [r["action"] for r in conn.execute("SELECT action FROM audit_logs ORDER BY id")]
        finally:
            conn.close()


class TestAuth(AppTestCase):

    def test_register_and_login(self):
        response = self.register()
        self.assertEqual(response.status_code, 302)
        self.assertTrue(response.headers["Location"].endswith("/login"))

        response = self.login()
        self.assertEqual(response.status_code, 302)
        with self.client.session_transaction() as sess:
            self.assertEqual(sess["user"]["username"], "alice")

        actions = self.audit_actions()
        self.assertIn("register_success", actions)
        self.assertIn("login_success", actions)

    def test_password_policy(self):
        response = self.register(password="weakpass")
        self.assertEqual(response.status_code, 400)
        self.assertIn(b"at least 8 chars", response.data)

    def test_password_mismatch(self):
        response = self.register(confirm="Other!pass1")
        self.assertEqual(response.status_code, 400)
        self.assertIn(b"Passwords do not match.", response.data)

    def test_duplicate_username(self):
        self.register()
        response = self.register()
        self.assertEqual(response.status_code, 409)

    def test_bad_credentials(self):
        self.register()
        self.assertEqual(self.login(password="Wrong!pass1").status_code, 401)
        self.assertEqual(self.login(username="bob").status_code, 401)
        self.assertIn("login_failed", self.audit_actions())

    def test_logout(self):
        self.register_and_login()
        response = self.client.post('/logout')
        self.assertEqual(response.status_code, 302)
        with self.client.session_transaction() as sess:
            self.assertNotIn("user", sess)

    def test_login_rate_limited(self):
        for _ in range(10):
            response = self.client.post('/login', data={})
            self.assertEqual(response.status_code, 400)
        self.assertEqual(response.headers["X-RateLimit-Limit"], "10")
        self.assertEqual(response.headers["X-RateLimit-Remaining"], "0")

        response = self.client.post('/login', data={})
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.get_json(), {"error": "Too many requests"})
        self.assertIn("rate_limit_block", self.audit_actions())


class TestPages(AppTestCase):

    def test_public_pages(self):
        for path in ('/', '/about', '/tools', '/login', '/register', '/achievements'):
            response = self.client.get(path)
            self.assertEqual(response.status_code, 200, path)

    def test_protected_pages_redirect(self):
        for path in ('/meds', '/period', '/audit-log', '/achievements/add', '/achievements/export.csv'):
            response = self.client.get(path)
            self.assertEqual(response.status_code, 302, path)
            self.assertTrue(response.headers["Location"].endswith("/login"), path)

    def test_not_found_is_audited(self):
        response = self.client.get('/no-such-page')
        self.assertEqual(response.status_code, 404)
        self.assertIn("not_found", self.audit_actions())

    def test_status(self):
        response = self.client.get('/status')
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.get_json()["db"]["connected"])

    @patch("builtins.print")
    def test_default_secret_warns(self, mock_print):
        self.assertTrue(warn_default_secret(DEFAULT_SECRET_KEY))
        self.assertIn("SECRET_KEY", mock_print.call_args[0][0])
        mock_print.reset_mock()
        self.assertFalse(warn_default_secret("s3cret-from-env"))
        mock_print.assert_not_called()

    def test_period_redirect(self):
        response = self.client.get('/tools/period')
        self.assertEqual(response.status_code, 301)

    def test_audit_log_lists_entries(self):
        self.register_and_login()
        response = self.client.get('/audit-log')
        self.assertEqual(response.status_code, 200)
        self.assertIn(b"login_success", response.data)


class TestAchievements(AppTestCase):

    def test_api_requires_login(self):
        self.assertEqual(self.client.get('/api/achievements').status_code, 401)
        self.assertEqual(self.client.get('/api/trends/weekly').status_code, 401)
        self.assertEqual(self.client.get('/api/meds').status_code, 401)

    def test_api_create_and_list(self):
        self.register_and_login()
        response = self.client.post('/api/achievements', json={
            "title": "5k <script>x</script>run", "category": "running", "metric": "km", "amount": "5.2"
        })
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.headers["X-RateLimit-Limit"], "20")

        data = self.client.get('/api/achievements').get_json()
        self.assertEqual(data["total"], 1)
        self.assertEqual(data["items"][0]["title"], "5k run")
        self.assertEqual(data["items"][0]["amount"], 5.2)

        filtered = self.client.get('/api/achievements?category=cycling').get_json()
        self.assertEqual(filtered["total"], 0)

    def test_api_validation(self):
        self.register_and_login()
        response = self.client.post('/api/achievements', json={"title": "", "amount": "lots"})
        self.assertEqual(response.status_code, 400)
        errors = response.get_json()["errors"]
        self.assertIn("amount must be a number", errors)
        self.assertEqual(len(errors), 4)

    def test_api_rejects_non_finite_amount(self):
        self.register_and_login()
        for amount in ("nan", "inf", "-Infinity"):
            response = self.client.post('/api/achievements', json={
                "title": "Run", "category": "running", "metric": "km", "amount": amount
            })
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.get_json()["errors"], ["amount must be a number"])
        self.assertEqual(self.client.get('/api/achievements').get_json()["total"], 0)

    def test_api_rejects_non_object_body(self):
        self.register_and_login()
        for body in ([1, 2], "Run 5km", 42):
            response = self.client.post('/api/achievements', json=body)
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.get_json()["errors"], ["body must be a JSON object"])

    def test_weekly_trends(self):
        self.register_and_login()
        self.client.post('/api/achievements', json={"title": "Swim", "category": "swim", "metric": "m", "amount": 800})
        items = self.client.get('/api/trends/weekly').get_json()["items"]
        self.assertEqual(len(items), 8)
        self.assertEqual(items[-1]["count"], 1)
        self.assertEqual(sum(i["count"] for i in items), 1)

    def test_form_add_search_and_export(self):
        self.register_and_login()
        response = self.client.post('/achievements/add', data={
            "title": "Deadlift PR", "category": "strength", "metric": "kg", "amount": "140", "notes": "felt good"
        })
        self.assertEqual(response.status_code, 302)

        page = self.client.get('/achievements')
        self.assertEqual(page.status_code, 200)
        self.assertIn(b"Deadlift PR", page.data)
        self.assertIn(b"This week: <strong>1</strong>", page.data)

        results = self.client.get('/achievements/search?q=felt')
        self.assertIn(b"Deadlift PR", results.data)

        export = self.client.get('/achievements/export.csv')
        self.assertEqual(export.status_code, 200)
        self.assertEqual(export.mimetype, "text/csv")
        lines = export.data.decode("utf-8").splitlines()
        self.assertEqual(lines[0], "id,title,category,metric,amount,notes,created_at")
        self.assertIn("Deadlift PR", lines[1])

    def test_form_add_rejects_bad_amount(self):
        self.register_and_login()
        response = self.client.post('/achievements/add', data={
            "title": "Run", "category": "running", "metric": "km", "amount": "far"
        })
        self.assertEqual(response.status_code, 400)
        self.assertIn(b"Amount must be a number.", response.data)

    def test_form_add_rejects_nan_amount(self):
        self.register_and_login()
        response = self.client.post('/achievements/add', data={
            "title": "Run", "category": "running", "metric": "km", "amount": "nan"
        })
        self.assertEqual(response.status_code, 400)
        self.assertIn(b"Amount must be a number.", response.data)


class TestMedications(AppTestCase):

    def add_med(self, **fields):
        data = {"name": "Ibuprofen", "dosage": "200mg", "freq_type": "interval", "interval_hours": "6"}
        data.update(fields)
        return self.client.post('/meds', data=data)

    def test_interval_medication_schedule(self):
        self.register_and_login()
        self.assertEqual(self.add_med().status_code, 302)

        items = self.client.get('/api/meds').get_json()["items"]
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]["interval_hours"], 6)
        self.assertEqual(len(items[0]["schedule"]), 4)
        self.assertEqual(items[0]["next_due"], items[0]["schedule"][0])

        page = self.client.get('/meds')
        self.assertEqual(page.status_code, 200)
        self.assertIn(b"Every 6h", page.data)

    def test_long_interval_has_no_dose_in_horizon(self):
        self.register_and_login()
        self.assertEqual(self.add_med(interval_hours="36").status_code, 302)
        items = self.client.get('/api/meds').get_json()["items"]
        self.assertEqual(items[0]["schedule"], [])
        self.assertIsNone(items[0]["next_due"])
        self.assertIn(b"No dose within the next 24 hours", self.client.get('/meds').data)

    def test_weekly_days_normalized(self):
        self.register_and_login()
        response = self.add_med(freq_type="weekly", time_of_day="09:30", days_of_week="thursday, MON, Thu")
        self.assertEqual(response.status_code, 302)
        med = self.client.get('/api/meds').get_json()["items"][0]
        self.assertEqual(med["days_of_week"], "Thu,Mon")
        self.assertIsNone(med["interval_hours"])
        self.assertEqual(med["time_of_day"], "09:30")
        self.assertLessEqual(len(med["schedule"]), 4)

    def test_validation_errors(self):
        self.register_and_login()
        cases = [
            ({"name": ""}, b"Medication name is required."),
            ({"interval_hours": "49"}, b"Interval must be a number between 1 and 48 hours."),
            ({"freq_type": "daily", "time_of_day": "8am"}, b"Time of day must be HH:MM."),
            ({"freq_type": "weekly", "time_of_day": "08:00", "days_of_week": "Funday"}, b"Days must be comma-separated"),
            ({"freq_type": "hourly"}, b"Invalid frequency type."),
        ]
        for fields, message in cases:
            response = self.add_med(**fields)
            self.assertEqual(response.status_code, 400, fields)
            self.assertIn(message, response.data)


class TestPeriod(AppTestCase):

    def test_log_and_predict(self):
        self.register_and_login()
        response = self.client.post('/period', data={"start_date": "2024-01-01", "cycle_length": "30"})
        self.assertEqual(response.status_code, 302)

        page = self.client.get('/period?year=2024&month=1')
        self.assertEqual(page.status_code, 200)
        self.assertIn(b"2024-01-31", page.data)
        self.assertIn(b"January 2024", page.data)

    def test_invalid_input(self):
        self.register_and_login()
        response = self.client.post('/period', data={"start_date": "2024-02-30", "cycle_length": "28"})
        self.assertEqual(response.status_code, 400)
        self.assertIn(b"Enter a valid start date", response.data)

        response = self.client.post('/period', data={"start_date": "2024-02-01", "cycle_length": "90"})
        self.assertEqual(response.status_code, 400)
        self.assertIn(b"Cycle length must be between 20 and 60 days.", response.data)

    def test_bad_calendar_params_fall_back(self):
        self.register_and_login()
        self.assertEqual(self.client.get('/period?year=abc&month=13').status_code, 200)


class TestTools(AppTestCase):

    def test_bmi(self):
        response = self.client.post('/tools/bmi', data={"height": "1.8", "weight": "81"})
        self.assertEqual(response.status_code, 200)
        self.assertIn(b"Overweight", response.data)
        self.assertIn("bmi_calc_success", self.audit_actions())

    def test_bmi_invalid_imperial(self):
        response = self.client.post('/tools/bmi', data={"height": "tall", "weight": "150", "unit": "imperial"})
        self.assertEqual(response.status_code, 400)
        self.assertIn(b"height (in)", response.data)

    def test_bmr_hr_macros_water(self):
        response = self.client.post('/tools/bmr', data={"sex": "male", "age": "30", "height": "180", "weight": "80"})
        self.assertIn(b"1780", response.data)
        response = self.client.post('/tools/hr', data={"age": "40"})
        self.assertIn(b"180", response.data)
        response = self.client.post('/tools/macros', data={"calories": "2000", "goal": "maintain"})
        self.assertIn(b"protein 150 g", response.data)
        response = self.client.post('/tools/water', data={"weight": "70"})
        self.assertIn(b"3.15 L", response.data)

    def test_invalid_tool_input(self):
        self.assertEqual(self.client.post('/tools/bmr', data={"age": "x"}).status_code, 400)
        self.assertEqual(self.client.post('/tools/hr', data={"age": "0"}).status_code, 400)
        self.assertEqual(self.client.post('/tools/macros', data={"calories": ""}).status_code, 400)
        self.assertEqual(self.client.post('/tools/water', data={"weight": "-1"}).status_code, 400)
        self.assertEqual(self.client.post('/tools/water', data={"weight": "inf"}).status_code, 400)
        self.assertEqual(self.client.post('/tools/bmr', data={
            "sex": "male", "age": "30", "height": "1e309", "weight": "80"
        }).status_code, 400)
        self.assertEqual(self.client.post('/tools/bmi', data={"height": "inf", "weight": "70"}).status_code, 400)

    @patch("app.fetch_nutrition")
    def test_nutrition(self, mock_fetch):
        mock_fetch.return_value = [{"name": "apple", "serving_size_g": 100, "calories": 52,
                                    "protein_g": 0.3, "carbohydrates_total_g": 14, "fat_total_g": 0.2}]
        response = self.client.post('/tools/nutrition', data={"q": "apple"})
        self.assertEqual(response.status_code, 200)
        self.assertIn(b"apple", response.data)
        mock_fetch.assert_called_once_with("apple")

    @patch("app.fetch_nutrition")
    def test_nutrition_failure(self, mock_fetch):
        mock_fetch.side_effect = NutritionError("down")
        response = self.client.post('/tools/nutrition', data={"q": "apple"})
        self.assertEqual(response.status_code, 500)
        self.assertIn(b"Failed to fetch nutrition data.", response.data)

    def test_nutrition_empty_query(self):
        self.assertEqual(self.client.post('/tools/nutrition', data={"q": "  "}).status_code, 400)


if __name__ == '__main__':
    unittest.main()
