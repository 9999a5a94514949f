"""mitigation_reaper.aws_clients — Lazy-singleton AWS service clients.

Provides factory functions that create boto3 clients on first call and
cache them for subsequent invocations. The SWF client carries the
connect/read timeouts that also size the "too young to probe" window.

botocore retries are switched off on both clients: retry.call_with_retries
owns the attempt budget for every ledger and SWF call.
"""

from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config

from .config import (
    DYNAMODB_REGION,
    SWF_CONNECT_TIMEOUT_SECONDS,
    SWF_READ_TIMEOUT_SECONDS,
    SWF_REGION,
)

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_ddb = None
_swf = None


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=region or DYNAMODB_REGION,
            config=Config(retries={"total_max_attempts": 1, "mode": "standard"}),
        )
    return _ddb


def _get_swf(region: Optional[str] = None):
    """Get (or create) the SWF client singleton."""
    global _swf
    if _swf is None:
        _swf = boto3.client(
            "swf",
            region_name=region or SWF_REGION,
            config=Config(
                retries={"total_max_attempts": 1, "mode": "standard"},
                connect_timeout=SWF_CONNECT_TIMEOUT_SECONDS,
                read_timeout=SWF_READ_TIMEOUT_SECONDS,
            ),
        )
    return _swf
