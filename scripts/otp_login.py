#!/usr/bin/env python3
"""Sign in to the gate backend with phone + OTP and print the session gate.

Usage:
    # Prompt for the OTP after it is sent:
    API_BASE_URL=https://gate.example.com python scripts/otp_login.py --phone 9876543210

    # Non-interactive, with a known code:
    python scripts/otp_login.py --phone 9876543210 --otp 123456

    # Only check what the stored session would do on startup:
    python scripts/otp_login.py --status

    # Forget stored credentials (the identity id is kept):
    python scripts/otp_login.py --logout

Environment Variables:
    API_BASE_URL: Backend base URL
    TOKEN_STORE: memory | file | redis (default: file)
    TOKEN_STORE_PATH: Session file used when TOKEN_STORE=file
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def describe(session) -> dict:
    gate = session.gate
    return {
        "phase": session.phase.value,
        "user_id": session.user.id if session.user else None,
        "selected_hub_id": session.selected_hub_id,
        "gate": gate.decision.value if gate else None,
        "role": gate.role.value if gate and gate.role else None,
        "screens": sorted(s.value for s in session.allowed_screens),
        "auth_error": session.auth_error,
    }


async def otp_login(phone: str | None, otp: str | None, status_only: bool, logout: bool) -> dict:
    # Import here to avoid loading config before env vars are set
    from gateauth.service.errors import GateAuthError
    from gateauth.service.runtime import get_runtime

    runtime = get_runtime()
    session = runtime.session
    try:
        await session.restore()
        if logout:
            await session.logout(reason="cli")
            return describe(session)
        if status_only or session.is_authenticated:
            if session.is_authenticated:
                print(f"Already signed in as {session.user.name}")
            return describe(session)
        if not phone:
            raise SystemExit("Error: --phone required to sign in")
        if not session.guest_token:
            await session.ensure_guest_token()
        if not session.guest_token:
            raise SystemExit(f"Error: {session.auth_error or 'no guest token'}")

        try:
            await session.send_otp(phone)
            print(f"OTP sent to {phone}")
            code = otp or input("Enter OTP: ").strip()
            result = await session.verify_otp(phone, code)
        except GateAuthError as exc:
            # Session was reset; prepare a fresh guest token for the next attempt
            await session.ensure_guest_token()
            raise SystemExit(f"Error: {exc.user_message}") from exc
        if result.is_new_user:
            print("Signed in as a new user")
        return describe(session)
    finally:
        await runtime.aclose()


def main():
    parser = argparse.ArgumentParser(
        description="Phone + OTP sign-in for the gate client session layer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--phone", default=os.environ.get("LOGIN_PHONE"), help="Phone number")
    parser.add_argument("--otp", help="OTP code (prompted when omitted)")
    parser.add_argument(
        "--status",
        action="store_true",
        help="Restore the stored session and report it without signing in",
    )
    parser.add_argument("--logout", action="store_true", help="Clear stored credentials")

    args = parser.parse_args()

    try:
        result = asyncio.run(otp_login(args.phone, args.otp, args.status, args.logout))
    except SystemExit:
        raise
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    for key, value in result.items():
        print(f"  {key}: {value}")


if __name__ == "__main__":
    main()
