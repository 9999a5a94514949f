"""test_layer.py — Unit tests for the mitigation_reaper layer building blocks.

Run from shared_layer directory:
    PYTHONPATH=python python3 -m pytest test_layer.py -v
"""

from __future__ import annotations

import json
import os
import sys
import unittest
from decimal import Decimal
from unittest.mock import MagicMock, patch

from botocore.awsrequest import AWSResponse
from botocore.exceptions import ClientError, EndpointConnectionError

# Ensure the layer's python/ directory is importable.
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "python"))

from mitigation_reaper.aws_clients import _get_ddb, _get_swf
from mitigation_reaper.errors import RetryExhaustedError
from mitigation_reaper.models import (
    LocationRepairState,
    RepairTask,
    RequestMetadata,
    SchedulingStatus,
    WorkflowCandidate,
)
from mitigation_reaper.retry import (
    BACKOFF_INCREMENTAL,
    BACKOFF_MULTIPLICATIVE,
    _is_transient,
    _retry_backoff_seconds,
    call_with_retries,
)
from mitigation_reaper.serialization import (
    _deserialize,
    _emit_structured_observability,
    _millis_to_datetime,
    _now_millis,
    _now_z,
    _serialize,
)


def _client_error(code: str, operation: str = "UpdateItem") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class SerializationTests(unittest.TestCase):
    def test_serialize_string(self):
        result = _serialize("hello")
        self.assertEqual(result, {"S": "hello"})

    def test_serialize_float(self):
        result = _serialize(3.14)
        self.assertEqual(result["N"], "3.14")

    def test_deserialize_item(self):
        item = {"DeviceName": {"S": "POP_ROUTER"}, "WorkflowId": {"N": "42"}, "Ratio": {"N": "0.5"}}
        result = _deserialize(item)
        self.assertEqual(result["DeviceName"], "POP_ROUTER")
        self.assertEqual(result["WorkflowId"], 42)
        self.assertIsInstance(result["WorkflowId"], int)
        self.assertEqual(result["Ratio"], 0.5)

    def test_now_z_format(self):
        ts = _now_z()
        self.assertTrue(ts.endswith("Z"))
        self.assertRegex(ts, r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z")

    def test_now_millis(self):
        import time

        now = _now_millis()
        self.assertAlmostEqual(now, int(time.time() * 1000), delta=2000)

    def test_millis_to_datetime_is_utc(self):
        value = _millis_to_datetime(1_700_000_000_000)
        self.assertEqual(value.tzinfo.utcoffset(value).total_seconds(), 0)
        self.assertEqual(int(value.timestamp()), 1_700_000_000)

    def test_structured_observability_emits_single_json_line(self):
        with self.assertLogs(level="INFO") as captured:
            _emit_structured_observability(
                component="request_reaper",
                event="sweep_complete",
                latency_ms=-5,
                extra={"candidates": 2},
            )
        self.assertEqual(len(captured.records), 1)
        message = captured.records[0].getMessage()
        self.assertTrue(message.startswith("[OBSERVABILITY] "))
        payload = json.loads(message[len("[OBSERVABILITY] "):])
        self.assertEqual(payload["event"], "sweep_complete")
        self.assertEqual(payload["latency_ms"], 0)
        self.assertEqual(payload["candidates"], 2)
        self.assertEqual(
            set(payload),
            {"timestamp", "component", "event", "latency_ms", "error_code", "candidates"},
        )


class AwsClientTests(unittest.TestCase):
    @patch("mitigation_reaper.aws_clients.boto3")
    def test_get_ddb_singleton(self, mock_boto3):
        import mitigation_reaper.aws_clients as clients

        clients._ddb = None  # Reset singleton
        mock_client = MagicMock()
        mock_boto3.client.return_value = mock_client

        result1 = _get_ddb()
        result2 = _get_ddb()

        # Same object returned both times.
        self.assertIs(result1, result2)
        # boto3.client called only once.
        mock_boto3.client.assert_called_once()

        clients._ddb = None  # Clean up

    @patch("mitigation_reaper.aws_clients.boto3")
    def test_get_swf_singleton_carries_timeouts(self, mock_boto3):
        import mitigation_reaper.aws_clients as clients

        clients._swf = None
        mock_boto3.client.return_value = MagicMock()

        self.assertIs(_get_swf(), _get_swf())
        mock_boto3.client.assert_called_once()
        args, kwargs = mock_boto3.client.call_args
        self.assertEqual(args[0], "swf")
        self.assertEqual(kwargs["config"].connect_timeout, clients.SWF_CONNECT_TIMEOUT_SECONDS)
        self.assertEqual(kwargs["config"].read_timeout, clients.SWF_READ_TIMEOUT_SECONDS)

        clients._swf = None


class _FailingBody:
    def __init__(self, body: bytes):
        self._body = body

    def stream(self, **_kwargs):
        yield self._body


class WireAttemptTests(unittest.TestCase):
    """Each app-level attempt must reach the wire exactly once."""

    def setUp(self):
        import boto3
        import mitigation_reaper.aws_clients as clients

        env = patch.dict(
            os.environ,
            {
                "AWS_ACCESS_KEY_ID": "testing",
                "AWS_SECRET_ACCESS_KEY": "testing",
                "AWS_EC2_METADATA_DISABLED": "true",
            },
        )
        env.start()
        self.addCleanup(env.stop)
        session = patch.object(boto3, "DEFAULT_SESSION", None)
        session.start()
        self.addCleanup(session.stop)
        sleeper = patch("mitigation_reaper.retry.time.sleep")
        sleeper.start()
        self.addCleanup(sleeper.stop)
        for name in ("_ddb", "_swf"):
            singleton = patch.object(clients, name, None)
            singleton.start()
            self.addCleanup(singleton.stop)
        self.sends = []

    def _fail_every_send(self, client, error_type):
        body = json.dumps({"__type": error_type, "message": "boom"}).encode()

        def handler(request, **_kwargs):
            self.sends.append(request.url)
            return AWSResponse(request.url, 500, {"Content-Type": "application/x-amz-json-1.0"}, _FailingBody(body))

        client.meta.events.register("before-send", handler)

    def test_clients_disable_botocore_retries(self):
        self.assertEqual(_get_ddb().meta.config.retries["total_max_attempts"], 1)
        self.assertEqual(_get_swf().meta.config.retries["total_max_attempts"], 1)

    def test_ledger_update_sends_once_per_attempt(self):
        from mitigation_reaper import ledger

        self._fail_every_send(_get_ddb(), "com.amazonaws.dynamodb.v20120810#InternalServerError")

        with self.assertRaises(RetryExhaustedError):
            ledger.set_location_completed("POP_ROUTER", "7", "L1")
        self.assertEqual(len(self.sends), ledger.LEDGER_UPDATE_MAX_ATTEMPTS)

    def test_execution_lookup_sends_once_per_attempt(self):
        from mitigation_reaper import orchestration

        self._fail_every_send(_get_swf(), "com.amazonaws.swf.base.model#InternalFailure")

        with self.assertRaises(RetryExhaustedError):
            orchestration.is_execution_closed("POP_ROUTER", "7", "run-1", 1_700_000_000_000)
        self.assertEqual(len(self.sends), orchestration.SWF_QUERY_MAX_ATTEMPTS)


class RetryTests(unittest.TestCase):
    def test_transient_classification(self):
        self.assertTrue(_is_transient(_client_error("ProvisionedThroughputExceededException")))
        self.assertTrue(_is_transient(_client_error("ThrottlingException")))
        self.assertTrue(_is_transient(EndpointConnectionError(endpoint_url="https://swf.us-west-2.amazonaws.com")))
        self.assertFalse(_is_transient(_client_error("ConditionalCheckFailedException")))
        self.assertFalse(_is_transient(_client_error("WorkflowExecutionAlreadyStartedFault")))
        self.assertFalse(_is_transient(ValueError("bad")))

    def test_backoff_schedules(self):
        self.assertAlmostEqual(_retry_backoff_seconds(1, 0.1, BACKOFF_INCREMENTAL), 0.1)
        self.assertAlmostEqual(_retry_backoff_seconds(3, 0.1, BACKOFF_INCREMENTAL), 0.3)
        self.assertAlmostEqual(_retry_backoff_seconds(1, 0.1, BACKOFF_MULTIPLICATIVE), 0.1)
        self.assertAlmostEqual(_retry_backoff_seconds(3, 0.1, BACKOFF_MULTIPLICATIVE), 0.4)

    @patch("mitigation_reaper.retry.time.sleep")
    def test_returns_after_transient_failures(self, mock_sleep):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise _client_error("ThrottlingException")
            return "ok"

        result = call_with_retries(flaky, operation="flaky", max_attempts=3, base_delay_seconds=0.1)
        self.assertEqual(result, "ok")
        self.assertEqual(len(calls), 3)
        self.assertEqual(mock_sleep.call_count, 2)

    @patch("mitigation_reaper.retry.time.sleep")
    def test_non_transient_error_is_not_retried(self, mock_sleep):
        fn = MagicMock(side_effect=_client_error("ConditionalCheckFailedException"))
        with self.assertRaises(ClientError):
            call_with_retries(fn, operation="update", max_attempts=3, base_delay_seconds=0.1)
        fn.assert_called_once()
        mock_sleep.assert_not_called()

    @patch("mitigation_reaper.retry.time.sleep")
    def test_exhaustion_raises_with_last_error(self, mock_sleep):
        last = _client_error("InternalServerError")
        fn = MagicMock(side_effect=[_client_error("ThrottlingException"), _client_error("ThrottlingException"), last])
        with self.assertRaises(RetryExhaustedError) as ctx:
            call_with_retries(
                fn,
                operation="query",
                max_attempts=3,
                base_delay_seconds=0.1,
                backoff=BACKOFF_MULTIPLICATIVE,
            )
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertIs(ctx.exception.last_error, last)
        self.assertIs(ctx.exception.__cause__, last)
        self.assertEqual(fn.call_count, 3)
        # No sleep after the final attempt.
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [0.1, 0.2])

    def test_rejects_zero_attempts(self):
        with self.assertRaises(ValueError):
            call_with_retries(lambda: None, operation="noop", max_attempts=0, base_delay_seconds=0.1)


class ModelTests(unittest.TestCase):
    def test_candidate_requires_identity_and_positive_timestamp(self):
        with self.assertRaises(ValueError):
            WorkflowCandidate(device_name="", workflow_id="7", run_handle=None, request_timestamp=1)
        with self.assertRaises(ValueError):
            WorkflowCandidate(device_name="D", workflow_id=" ", run_handle=None, request_timestamp=1)
        with self.assertRaises(ValueError):
            WorkflowCandidate(device_name="D", workflow_id="7", run_handle=None, request_timestamp=0)

    def test_candidate_is_immutable(self):
        candidate = WorkflowCandidate(device_name="D", workflow_id="7", run_handle=None, request_timestamp=1)
        with self.assertRaises(Exception):
            candidate.request_timestamp = 2  # type: ignore[misc]
        self.assertEqual(candidate.key, "D/7")

    def test_location_settled_requires_every_condition(self):
        done = {"DEPLOY_SUCCEEDED"}
        settled = LocationRepairState("L5", SchedulingStatus.COMPLETED, "DEPLOY_SUCCEEDED", True)
        self.assertTrue(settled.is_settled(done))
        self.assertFalse(LocationRepairState("L", SchedulingStatus.COMPLETED, "DEPLOY_SUCCEEDED", None).is_settled(done))
        self.assertFalse(LocationRepairState("L", SchedulingStatus.RUNNING, "DEPLOY_SUCCEEDED", True).is_settled(done))
        self.assertFalse(LocationRepairState("L", SchedulingStatus.COMPLETED, "DEPLOYING", True).is_settled(done))

    def test_repair_task_payload_keeps_missing_locations(self):
        candidate = WorkflowCandidate(
            device_name="POP_ROUTER",
            workflow_id="7",
            run_handle="run-1",
            request_timestamp=1_700_000_000_000,
            affected_locations=("L1", "L2"),
        )
        metadata = RequestMetadata(mitigation_name="m1", mitigation_version=Decimal("2"), request_type="Create")
        task = RepairTask(
            candidate=candidate,
            location_states={
                "L1": None,
                "L2": LocationRepairState("L2", SchedulingStatus.RUNNING, None, False),
            },
            metadata=metadata,
        )
        payload = json.loads(task.to_json())
        self.assertEqual(payload["deviceName"], "POP_ROUTER")
        self.assertEqual(payload["workflowId"], "7")
        self.assertIsNone(payload["locations"]["L1"])
        self.assertEqual(payload["locations"]["L2"]["schedulingStatus"], "RUNNING")
        self.assertFalse(payload["locations"]["L2"]["activeMitigationsUpdated"])
        self.assertEqual(payload["metadata"]["mitigationName"], "m1")


if __name__ == "__main__":
    unittest.main()
