import hmac
import hashlib
import json
from urllib.parse import urlencode


def build_query(params: dict) -> str:
    return urlencode(params, doseq=True)


def build_body(params: dict) -> str:
    # compact separators: the signed string must match the sent body byte for byte
    return json.dumps(params, separators=(",", ":"))


def sign(secret: str, payload: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def signature_payload(timestamp_ms: int, api_key: str, recv_window: int, body_or_query: str) -> str:
    """Bybit v5: timestamp + api_key + recv_window + (query string | json body)."""
    return f"{int(timestamp_ms)}{api_key}{int(recv_window)}{body_or_query}"


def auth_headers(api_key: str, api_secret: str, timestamp_ms: int, recv_window: int, body_or_query: str) -> dict:
    payload = signature_payload(timestamp_ms, api_key, recv_window, body_or_query)
    return {
        "X-BAPI-API-KEY": api_key,
        "X-BAPI-TIMESTAMP": str(int(timestamp_ms)),
        "X-BAPI-RECV-WINDOW": str(int(recv_window)),
        "X-BAPI-SIGN": sign(api_secret, payload),
    }
