"""
S3 ObjectCreated handler deployed next to each s3uplink bucket.

Runs on the bare Lambda Python runtime (no extra packages), so it only uses
the standard library. Expects WEBHOOK_URL; POSTs {"key", "eTag"} per record.
A non-2xx webhook answer raises, which makes Lambda retry the event.
"""
import json
import os
import urllib.request
from urllib.parse import unquote_plus


def _post(url, payload, timeout=8):
    body = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json"},
    )
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        status = resp.status
        text = resp.read().decode("utf-8", errors="ignore")
    print(f"Webhook responded with status {status}: {text}")
    if status < 200 or status >= 300:
        raise RuntimeError(f"Webhook responded with {status}")


def handler(event, context):
    webhook_url = os.environ.get("WEBHOOK_URL")
    if not webhook_url:
        raise RuntimeError("WEBHOOK_URL is not set")

    print("Received S3 event:", json.dumps(event))

    for record in event.get("Records") or []:
        obj = (record.get("s3") or {}).get("object") or {}
        key = unquote_plus(obj.get("key") or "")
        if not key:
            continue
        _post(webhook_url, {"key": key, "eTag": obj.get("eTag")})

    return {"status": "ok"}
