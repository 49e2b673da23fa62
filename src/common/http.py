"""Helpers for Lambda Function URL and API Gateway events."""

import base64
import binascii
import json
from decimal import Decimal
from typing import Any, Dict, Optional


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder for Decimal values read back from DynamoDB."""

    def default(self, obj):
        if isinstance(obj, Decimal):
            if obj % 1 == 0:
                return int(obj)
            return float(obj)
        return super().default(obj)


def get_http_method(event: Dict[str, Any]) -> str:
    """HTTP method from a Function URL (v2) or API Gateway (v1) event, else ''."""
    http = ((event or {}).get("requestContext") or {}).get("http") or {}
    method = http.get("method") or (event or {}).get("httpMethod") or ""
    return str(method).upper()


def is_http_event(event: Dict[str, Any]) -> bool:
    return bool(get_http_method(event)) or "body" in (event or {})


def decode_body(event: Dict[str, Any]) -> Optional[str]:
    """Raw request body, base64-decoded when the event says so.

    Raises:
        ValueError: The body is flagged as base64 but does not decode.
    """
    raw = (event or {}).get("body")
    if not isinstance(raw, str) or not raw:
        return None
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(raw, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ValueError(f"Invalid base64 body: {e}") from e
    return raw


def json_response(
    status_code: int, body: Any, headers: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json", **(headers or {})},
        "body": json.dumps(body, cls=DecimalEncoder),
    }


def empty_response(status_code: int = 204, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    return {"statusCode": status_code, "headers": dict(headers or {}), "body": ""}
