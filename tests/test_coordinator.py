"""Unit tests for the coordinator HTTP client."""

from __future__ import annotations

import json
import sys
import unittest
from pathlib import Path
from typing import Any, Optional
from unittest.mock import MagicMock

import requests


ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from computeshare.coordinator import CoordinatorClient, normalize_url
from computeshare.errors import CoordinatorHTTPError, ProtocolError, TransportError
from computeshare.schemas import Balance, Result, SignatureBlock
from computeshare.seer import DEFAULT_MODEL


def fake_response(status_code: int = 200, body: Any = None, text: Optional[str] = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    if text is None:
        text = "" if body is None else json.dumps(body)
    resp.text = text
    if body is None and text:
        resp.json.side_effect = ValueError("Expecting value")
    else:
        resp.json.return_value = body
    return resp


class NormalizeUrlTests(unittest.TestCase):
    def test_adds_scheme_and_strips_trailing_slash(self) -> None:
        self.assertEqual(normalize_url("coord.local:8080/"), "http://coord.local:8080")
        self.assertEqual(normalize_url(" HTTPS://Coord.Example/api/ "), "https://coord.example/api")

    def test_rejects_empty(self) -> None:
        with self.assertRaises(ValueError):
            normalize_url("  ")


class CoordinatorClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = MagicMock()
        self.client = CoordinatorClient("coord:8080", session=self.session)

    def test_session_sends_json(self) -> None:
        self.session.headers.update.assert_called_with({"Content-Type": "application/json"})
        self.assertEqual(self.client.api_base, "http://coord:8080")

    def test_register_is_idempotent(self) -> None:
        self.session.post.return_value = fake_response(200, {"status": "ok"})
        self.assertTrue(self.client.register("w1", "PUBKEY"))
        self.assertFalse(self.client.register("w1", "PUBKEY"))
        self.session.post.assert_called_once()
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "http://coord:8080/register")
        body = json.loads(kwargs["data"])
        self.assertEqual(body["worker_id"], "w1")
        self.assertEqual(body["pub_key"], "PUBKEY")
        self.assertEqual(
            body["capabilities"], ["math:basic", "math:advanced", "analytics:vector", "script:sandbox"]
        )

    def test_failed_registration_is_not_remembered(self) -> None:
        self.session.post.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(TransportError):
            self.client.register("w1", "PUBKEY")
        self.assertFalse(self.client.is_registered("w1"))

    def test_changing_api_base_forgets_registrations(self) -> None:
        self.session.post.return_value = fake_response(200, {})
        self.client.register("w1", "PUBKEY")
        self.client.set_api_base("http://coord:8080/")
        self.assertTrue(self.client.is_registered("w1"))
        self.client.set_api_base("other:9000")
        self.assertFalse(self.client.is_registered("w1"))
        self.assertEqual(self.client.endpoint("/get_task"), "http://other:9000/get_task")

    def test_claim_no_content_is_not_an_error(self) -> None:
        self.session.get.return_value = fake_response(204)
        self.assertIsNone(self.client.claim_task("w1"))
        args, kwargs = self.session.get.call_args
        self.assertEqual(args[0], "http://coord:8080/get_task")
        self.assertEqual(kwargs["headers"], {"X-Worker-Id": "w1"})
        self.assertIsNone(kwargs["timeout"])

    def test_claim_empty_body_is_no_task(self) -> None:
        self.session.get.return_value = fake_response(200, text="  ")
        self.assertIsNone(self.client.claim_task("w1"))

    def test_claim_returns_task(self) -> None:
        self.session.get.return_value = fake_response(
            200,
            {
                "id": "t9",
                "operation": "vector_sum",
                "input": 0,
                "payload": {"values": [1, 2]},
                "kind": "custom",
                "required_capabilities": ["analytics:vector"],
                "price": 3,
            },
        )
        task = self.client.claim_task("w1")
        self.assertEqual(task.id, "t9")
        self.assertEqual(task.payload, {"values": [1, 2]})
        self.assertEqual(task.required_capabilities, ["analytics:vector"])

    def test_claim_transport_failure_raises(self) -> None:
        self.session.get.side_effect = requests.ConnectionError("down")
        with self.assertRaises(TransportError) as ctx:
            self.client.claim_task("w1")
        self.assertEqual(ctx.exception.operation, "claim_task")

    def test_claim_http_failure_raises(self) -> None:
        self.session.get.return_value = fake_response(500, text="boom")
        with self.assertRaises(CoordinatorHTTPError) as ctx:
            self.client.claim_task("w1")
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(ctx.exception.body, "boom")

    def test_claim_unparsable_body_raises(self) -> None:
        self.session.get.return_value = fake_response(200, text="<html>")
        with self.assertRaises(ProtocolError):
            self.client.claim_task("w1")

    def test_claim_without_id_raises(self) -> None:
        self.session.get.return_value = fake_response(200, {"operation": "square"})
        with self.assertRaises(ProtocolError):
            self.client.claim_task("w1")

    def test_timeout_is_passed_when_configured(self) -> None:
        client = CoordinatorClient("coord", session=self.session, timeout=2.5)
        self.session.get.return_value = fake_response(204)
        client.claim_task("w1")
        self.assertEqual(self.session.get.call_args[1]["timeout"], 2.5)

    def test_submit_result_posts_signed_body(self) -> None:
        self.session.post.return_value = fake_response(200, {"status": "ok"})
        result = Result(
            task_id="t1",
            worker_id="w1",
            output=4.0,
            signature=SignatureBlock(signature="SIG", public_key="PUB"),
            kind="custom",
            metadata={"n": 2},
        )
        self.client.submit_result(result)
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "http://coord:8080/submit_result")
        self.assertEqual(
            json.loads(kwargs["data"]),
            {
                "id": "t1",
                "worker": "w1",
                "output": 4.0,
                "signature": "SIG",
                "pub_key": "PUB",
                "kind": "custom",
                "payload": {"n": 2},
            },
        )

    def test_submit_failure_surfaces(self) -> None:
        self.session.post.return_value = fake_response(409, text="duplicate")
        result = Result("t1", "w1", 4.0, SignatureBlock("SIG", "PUB"))
        with self.assertRaises(CoordinatorHTTPError):
            self.client.submit_result(result)

    def test_create_task_infers_capabilities(self) -> None:
        self.session.post.return_value = fake_response(200, {"id": "t5"})
        created = self.client.create_task("factorial", 5, price=2)
        self.assertEqual(created, {"id": "t5"})
        body = json.loads(self.session.post.call_args[1]["data"])
        self.assertEqual(body["required_capabilities"], ["math:advanced"])
        self.assertEqual(body["kind"], "custom")
        self.assertEqual(body["input"], 5)

    def test_create_task_sends_whole_price(self) -> None:
        self.session.post.return_value = fake_response(200, {"id": "t6"})
        self.client.create_task("square", 3, price=5.0)
        data = self.session.post.call_args[1]["data"]
        self.assertIn('"price": 5,', data)
        self.assertIs(type(json.loads(data)["price"]), int)

    def test_create_task_rejects_fractional_price(self) -> None:
        for price in (2.5, float("nan"), float("inf"), True):
            with self.subTest(price=price):
                with self.assertRaises(ValueError):
                    self.client.create_task("square", 2, price=price)
        self.session.post.assert_not_called()

    def test_create_task_rejects_negative_price(self) -> None:
        with self.assertRaises(ValueError):
            self.client.create_task("square", 2, price=-1)
        self.session.post.assert_not_called()

    def test_balance_falls_back_to_last_known_value(self) -> None:
        self.session.get.return_value = fake_response(200, {"trust": 3, "token": 10})
        self.assertEqual(self.client.fetch_balance("w1"), Balance(trust=3, token=10))
        self.assertEqual(self.session.get.call_args[1]["params"], {"worker": "w1"})

        self.session.get.side_effect = requests.Timeout("slow")
        self.assertEqual(self.client.fetch_balance("w1"), Balance(trust=3, token=10, stale=True))

    def test_balance_without_history_is_zero(self) -> None:
        self.session.get.side_effect = requests.ConnectionError("down")
        self.assertEqual(self.client.fetch_balance("w1"), Balance(stale=True))

    def test_overview_falls_back_to_cache(self) -> None:
        self.session.get.return_value = fake_response(200, [{"id": "a", "operation": "square"}])
        first = self.client.fetch_overview()
        self.assertEqual([task.id for task in first], ["a"])

        self.session.get.return_value = fake_response(502, text="bad gateway")
        self.assertEqual(self.client.fetch_overview(), first)

    def test_overview_without_cache_raises(self) -> None:
        self.session.get.side_effect = requests.ConnectionError("down")
        with self.assertRaises(TransportError):
            self.client.fetch_overview()

    def test_overview_null_is_empty(self) -> None:
        self.session.get.return_value = fake_response(200, text="null")
        self.session.get.return_value.json.side_effect = None
        self.session.get.return_value.json.return_value = None
        self.assertEqual(self.client.fetch_overview(), [])

    def test_remote_model_is_normalized(self) -> None:
        self.session.get.return_value = fake_response(
            200,
            {"Intercept": -4, "Age": 0.05, "AgeSq": 0, "City": {"Paris": 0.3}, "CauseMap": {}},
        )
        model = self.client.fetch_remote_model()
        self.assertEqual(model.intercept, -4.0)
        self.assertEqual(dict(model.city), {"paris": 0.3})
        self.assertIn("default", model.cause)
        self.assertIs(self.client.model, model)

    def test_remote_model_failure_keeps_held_model(self) -> None:
        self.session.get.side_effect = requests.ConnectionError("down")
        self.assertEqual(self.client.fetch_remote_model(), DEFAULT_MODEL)
        self.session.get.side_effect = None
        self.session.get.return_value = fake_response(200, text="not json")
        self.assertEqual(self.client.fetch_remote_model(), DEFAULT_MODEL)

    def test_predict_uses_remote_answer(self) -> None:
        self.session.post.return_value = fake_response(
            200,
            {"prediction": "p", "yearsRemaining": 40, "riskScore": 0.1, "advisory": "a", "reason": "r"},
        )
        fate = self.client.predict(40, "Tokyo", "Japan", "")
        self.assertEqual(fate.source, "remote")
        self.assertEqual(fate.years_remaining, 40)
        body = json.loads(self.session.post.call_args[1]["data"])
        self.assertEqual(body, {"age": 40, "city": "Tokyo", "country": "Japan", "ethnicity": ""})

    def test_predict_falls_back_to_local_model(self) -> None:
        self.session.post.side_effect = requests.ConnectionError("down")
        fate = self.client.predict(40, "Tokyo", "Japan", "")
        self.assertEqual(fate.source, "local")
        self.assertEqual(fate.prediction, "The threads favour a long life.")


if __name__ == "__main__":
    unittest.main()
