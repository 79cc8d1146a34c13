from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import sys
import urllib.error
import urllib.request
from datetime import datetime, timezone

OUTCOMES = [
    "qualified",
    "meeting_scheduled",
    "site_visit_scheduled",
    "no_answer",
    "failed",
]


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def send(
    url: str,
    *,
    method: str = "GET",
    body: bytes | None = None,
    headers: dict[str, str] | None = None,
) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method=method)
    request.add_header("Content-Type", "application/json")
    for key, value in (headers or {}).items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def pending_lead_ids(base_url: str, campaign_id: str, headers: dict[str, str]) -> list[str]:
    status_code, content = send(
        f"{base_url}/campaigns/{campaign_id}/leads?lead_status=PENDING",
        headers=headers,
    )
    if status_code != 200:
        raise RuntimeError(f"could not list leads: {status_code} {content}")
    return [item["lead_id"] for item in json.loads(content)]


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Send mock worker callbacks for a campaign's pending leads to a local API."
    )
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--campaign-id", required=True)
    parser.add_argument("--lead-id", action="append", default=[], help="Repeatable; defaults to all pending leads.")
    parser.add_argument("--outcome", choices=OUTCOMES, default=None, help="Defaults to cycling outcomes.")
    parser.add_argument("--org-id", default="org_dev")
    parser.add_argument("--token", default="")
    parser.add_argument("--secret", default="")
    parser.add_argument("--repeat", type=int, default=1, help="Deliver each callback this many times.")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    api_headers = {"X-Org-Id": args.org_id}
    if args.token:
        api_headers["Authorization"] = f"Bearer {args.token}"

    lead_ids = args.lead_id or pending_lead_ids(base_url, args.campaign_id, api_headers)
    if not lead_ids:
        print("no pending leads")
        return 0

    endpoint = f"{base_url}/webhooks/callback"
    for index, lead_id in enumerate(lead_ids):
        payload = {
            "campaign_id": args.campaign_id,
            "lead_id": lead_id,
            "outcome": args.outcome or OUTCOMES[index % len(OUTCOMES)],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        headers = dict(api_headers)
        if args.secret:
            headers["X-Signature"] = sign_payload(args.secret, body)
        for _ in range(max(1, args.repeat)):
            status_code, response = send(endpoint, method="POST", body=body, headers=headers)
            print(f"{status_code} {lead_id} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
