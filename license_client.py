# license_client.py: installed-application side of the license server
# - subscribe(email): starts checkout, remembers the pending key
# - check_activation(): validates key + email + this machine's fingerprint
# - activate(email, key): store credentials received out of band, then check
# - deactivate(): frees the key on the server, always clears local state
# - Small CLI: `license-client subscribe|check|activate|deactivate|clear`

from __future__ import annotations

import os
import json
import uuid
import socket
import hashlib
import logging
import pathlib
import platform
import datetime
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------------- Configuration knobs --------------------------

SERVER = os.environ.get("LICENSE_SERVER", "http://localhost:8080").rstrip("/")

CONNECT_TO = float(os.environ.get("LICENSE_CONNECT_TIMEOUT", "6"))
READ_TO    = float(os.environ.get("LICENSE_READ_TIMEOUT", "15"))
TIMEOUT    = (CONNECT_TO, READ_TO)

RETRIES        = int(os.environ.get("LICENSE_RETRIES", "4"))
BACKOFF_FACTOR = float(os.environ.get("LICENSE_BACKOFF", "0.8"))

# Accept the last server-confirmed expiry when the server can't be reached?
OFFLINE_OK = os.environ.get("LICENSE_OFFLINE_OK", "1") == "1"

API_TOKEN  = os.environ.get("LICENSE_API_TOKEN", "")
STATE_FILE = os.environ.get("LICENSE_STATE_FILE", "license_state.json")

logger = logging.getLogger("license_client")


# ------------------------------- Utilities --------------------------------

def machine_fingerprint() -> str:
    """Stable, anonymous machine fingerprint."""
    basis = f"{uuid.getnode()}|{socket.gethostname()}|{platform.system()}|{platform.machine()}"
    return hashlib.sha256(basis.encode("utf-8", errors="ignore")).hexdigest()


def _state_path() -> pathlib.Path:
    return pathlib.Path(STATE_FILE).resolve()


def _load_state() -> Dict[str, Any]:
    try:
        with open(_state_path(), "r", encoding="utf-8") as f:
            j = json.load(f)
            return j if isinstance(j, dict) else {}
    except (OSError, ValueError):
        return {}


def _save_state(data: Dict[str, Any]) -> bool:
    p = _state_path()
    tmp = p.with_name(p.name + ".tmp")
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, p)
        return True
    except OSError as e:
        logger.error(f"save_state failed: {e!r}")
        return False


def _clear_state_file() -> bool:
    try:
        _state_path().unlink(missing_ok=True)
        return True
    except OSError as e:
        logger.error(f"clear_state failed: {e!r}")
        return False


def _session() -> requests.Session:
    """Return a requests session with retry + proxy support."""
    s = requests.Session()
    retry = Retry(
        total=RETRIES,
        connect=RETRIES,
        read=RETRIES,
        backoff_factor=BACKOFF_FACTOR,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["GET", "POST"]),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    return s


def _headers() -> Dict[str, str]:
    return {"X-License-Token": API_TOKEN} if API_TOKEN else {}


def _normalize_error(prefix: str, exc: Exception) -> str:
    if isinstance(exc, (requests.exceptions.ReadTimeout, requests.exceptions.ConnectTimeout)):
        return f"{prefix}: Connection timed out. Please check your network and try again."
    if isinstance(exc, requests.exceptions.SSLError):
        return f"{prefix}: TLS/Certificate error. If on a corporate network, set REQUESTS_CA_BUNDLE."
    if isinstance(exc, requests.exceptions.ConnectionError):
        return f"{prefix}: Connection error: {exc!s}"
    return f"{prefix}: {exc!s}"


def _post(path: str, payload: Dict[str, Any]) -> requests.Response:
    return _session().post(f"{SERVER}{path}", json=payload, headers=_headers(), timeout=TIMEOUT)


def _json(resp: requests.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _still_valid(expires_at: Optional[str]) -> bool:
    if not expires_at:
        return False
    try:
        exp = datetime.datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
    except ValueError:
        return False
    if exp.tzinfo is None:
        exp = exp.replace(tzinfo=datetime.timezone.utc)
    return exp > datetime.datetime.now(datetime.timezone.utc)


# ------------------------------- Public API --------------------------------

def subscribe(email: str) -> Dict[str, Any]:
    """
    POST /subscribe {email, fingerprint}
    On success remembers {email, license_key, reference}; the caller opens
    authorizationUrl to pay.
    """
    email = (email or "").strip().lower()
    if not email:
        return {"ok": False, "error": "email is required"}
    try:
        r = _post("/subscribe", {"email": email, "fingerprint": machine_fingerprint()})
    except requests.exceptions.RequestException as e:
        return {"ok": False, "error": _normalize_error("Subscribe failed", e)}

    data = _json(r)
    if r.status_code >= 400 or not data.get("licenseKey"):
        return {"ok": False, "error": data.get("error") or f"Subscribe failed ({r.status_code})."}

    _save_state({
        "email": email,
        "license_key": data["licenseKey"],
        "reference": data.get("reference"),
        "status": "pending",
    })
    return {"ok": True, **data}


def check_activation() -> Dict[str, Any]:
    """
    POST /validate {email, licenseKey, fingerprint}
    Returns:
      { "ok": True,  "expires_at": "...", "offline": False }
      { "ok": False, "error": "...", "code": "..." }
    """
    st = _load_state()
    email = st.get("email")
    key = st.get("license_key")
    if not (email and key):
        return {"ok": False, "error": "not_activated"}

    payload = {"email": email, "licenseKey": key, "fingerprint": machine_fingerprint()}
    try:
        r = _post("/validate", payload)
    except requests.exceptions.RequestException as e:
        msg = _normalize_error("License check error", e)
        logger.warning(msg)
        if OFFLINE_OK and _still_valid(st.get("expires_at")):
            return {"ok": True, "expires_at": st["expires_at"], "offline": True, "note": "network_error_offline_ok"}
        return {"ok": False, "error": msg}

    data = _json(r)
    if r.status_code == 200 and data.get("status") == "valid":
        st.update({
            "status": "active",
            "expires_at": data.get("expiresAt"),
            "activation_token": data.get("activationToken"),
        })
        _save_state(st)
        return {"ok": True, "expires_at": data.get("expiresAt"), "offline": False}

    if r.status_code >= 500 and OFFLINE_OK and _still_valid(st.get("expires_at")):
        return {"ok": True, "expires_at": st["expires_at"], "offline": True, "note": f"server_check_failed:{r.status_code}"}

    return {"ok": False, "error": data.get("error") or f"License check failed ({r.status_code}).", "code": data.get("code")}


def activate(email: str, license_key: str) -> Dict[str, Any]:
    """Remember credentials the user typed in, then validate them."""
    email = (email or "").strip().lower()
    license_key = (license_key or "").strip().upper()
    if not (email and license_key):
        return {"ok": False, "error": "email and license key are required"}
    if not _save_state({"email": email, "license_key": license_key}):
        return {"ok": False, "error": "could not write local license state"}
    return check_activation()


def deactivate() -> Dict[str, Any]:
    """Best-effort server deactivation; always clears local state."""
    st = _load_state()
    key = st.get("license_key")
    if not key:
        _clear_state_file()
        return {"ok": False, "error": "not_activated"}
    try:
        r = _post("/deactivate", {"licenseKey": key})
    except requests.exceptions.RequestException as e:
        _clear_state_file()
        return {"ok": False, "error": _normalize_error("Deactivation error", e)}
    _clear_state_file()
    if r.status_code >= 400:
        return {"ok": False, "error": f"Server responded {r.status_code}; local state cleared."}
    return {"ok": True}


def clear_state() -> Dict[str, Any]:
    ok = _clear_state_file()
    return {"ok": ok, "error": None if ok else "Failed to remove local state."}


# ------------------------------- CLI -----------------------------------------

def main(argv=None):
    import argparse
    ap = argparse.ArgumentParser(description="License client")
    sub = ap.add_subparsers(dest="cmd")

    sp = sub.add_parser("subscribe", help="Start a subscription for this machine")
    sp.add_argument("--email", required=True)

    sub.add_parser("check", help="Validate this machine's license")

    ac = sub.add_parser("activate", help="Store an email + license key and validate them")
    ac.add_argument("--email", required=True)
    ac.add_argument("--key", required=True, help="License key")

    sub.add_parser("deactivate", help="Deactivate on server and clear local state")
    sub.add_parser("clear", help="Clear local state only")
    sub.add_parser("fingerprint", help="Print this machine's fingerprint")

    args = ap.parse_args(argv)
    if args.cmd == "subscribe":
        out = subscribe(args.email)
    elif args.cmd == "check":
        out = check_activation()
    elif args.cmd == "activate":
        out = activate(args.email, args.key)
    elif args.cmd == "deactivate":
        out = deactivate()
    elif args.cmd == "clear":
        out = clear_state()
    elif args.cmd == "fingerprint":
        out = {"ok": True, "fingerprint": machine_fingerprint()}
    else:
        ap.print_help()
        return 1
    print(json.dumps(out, indent=2))
    return 0 if out.get("ok") else 1


if __name__ == "__main__":
    raise SystemExit(main())
