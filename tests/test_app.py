import unittest
from unittest.mock import MagicMock
from config import Config
from database import db, Patient, SqlGenerationLog
from agents.outcomes import CandidateQuery
from agents.reasoning import ReasoningTurn
from utils import get_schema_info, format_schema_context

import app as app_module


class AppTestConfig(Config):
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQL_POLICY_PATH = None
    SQL_EXPLAIN_CHECK = False
    TESTING = True


def final_turn(sql):
    return ReasoningTurn(
        message={"role": "assistant", "content": None},
        final_answer=CandidateQuery(sql=sql, explanation="Lab results.", confidence="high", call_id="f1"),
    )


class TestApp(unittest.TestCase):
    def setUp(self):
        self.reasoning = MagicMock()
        self.app = app_module.create_app(AppTestConfig, reasoning=self.reasoning)
        self.client = self.app.test_client()
        with self.app.app_context():
            db.create_all()
            db.session.add_all([Patient(id='A', full_name='Anna'), Patient(id='B', full_name='Ben')])
            db.session.commit()

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()

    def test_health(self):
        res = self.client.get('/health')
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json(), {"status": "healthy"})

    def test_schema(self):
        res = self.client.get('/schema')
        tables = res.get_json()["tables"]
        self.assertIn("lab_results", tables)
        self.assertNotIn("sql_generation_logs", tables)

    def test_sql_generator_requires_question(self):
        res = self.client.post('/sql-generator', json={})
        self.assertEqual(res.status_code, 400)

    def test_sql_generator_success_is_audited(self):
        self.reasoning.complete.return_value = final_turn("SELECT * FROM lab_results WHERE patient_id = 'A'")

        res = self.client.post('/sql-generator', json={"question": "my glucose", "patient_id": "A"})

        body = res.get_json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["sql"], "SELECT * FROM lab_results WHERE patient_id = 'A' LIMIT 50")
        self.assertNotIn("confidence", body)
        with self.app.app_context():
            logs = SqlGenerationLog.query.all()
            self.assertEqual(len(logs), 1)
            self.assertEqual(logs[0].status, "success")

        audit = self.client.get('/audit').get_json()
        self.assertEqual(audit[0]["prompt"], "my glucose")

    def test_patient_count_read_per_request(self):
        # With one patient the scope stage is skipped
        with self.app.app_context():
            db.session.delete(db.session.get(Patient, 'B'))
            db.session.commit()
        self.reasoning.complete.return_value = final_turn("SELECT * FROM lab_results")
        res = self.client.post('/sql-generator', json={"question": "labs"})
        self.assertTrue(res.get_json()["ok"])

        # A patient added later must switch scoping back on
        with self.app.app_context():
            db.session.add(Patient(id='C', full_name='Cleo'))
            db.session.commit()
        res = self.client.post('/sql-generator', json={"question": "labs", "patient_id": "A"})
        body = res.get_json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["error"]["code"], "VALIDATION_FAILED")

    def test_validate_sql(self):
        res = self.client.post('/validate-sql', json={
            "sql": "SELECT * FROM lab_results WHERE patient_id IN ('A', 'B')", "patient_id": "A",
        })
        body = res.get_json()
        self.assertFalse(body["valid"])
        self.assertEqual(body["violation_code"], "CROSS_PATIENT_LEAK")

        res = self.client.post('/validate-sql', json={
            "sql": "SELECT * FROM lab_results WHERE patient_id = 'A'", "patient_id": "A",
        })
        self.assertEqual(res.get_json(), {"valid": True, "sql": "SELECT * FROM lab_results WHERE patient_id = 'A' LIMIT 50"})


class TestSchemaUtils(unittest.TestCase):
    def test_schema_info(self):
        schema = get_schema_info()
        lab_results = schema["tables"]["lab_results"]
        self.assertEqual(lab_results["fks"]["patient_id"], "patients.id")
        self.assertIn("id", lab_results["pks"])

    def test_format_schema_context(self):
        context = format_schema_context(get_schema_info())
        self.assertIn("### lab_results", context)
        self.assertIn("- patient_id: text (references patients.id)", context)

if __name__ == '__main__':
    unittest.main()
