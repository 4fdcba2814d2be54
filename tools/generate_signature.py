#!/usr/bin/env python3
"""
Request Signature Generator

Prints the signing headers for a request as JSON, for testing integrations
and reproducing a client's signature by hand.

The secret is read from PAYGUARD_SIGNING_SECRET unless --secret is given,
so it does not have to appear in shell history.

Usage:
    python tools/generate_signature.py --key-id app-1 --version 1 --algorithm HMAC_SHA512

Exit Codes:
    0 - Headers generated
    2 - Invalid arguments (missing secret, bad date, unsupported algorithm)
"""

import argparse
import json
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError

from payguard.app.errors import PayguardError
from payguard.app.models.requests import SignatureRequest
from payguard.app.services.hmac_primitive import HmacAlgorithm
from payguard.app.services.signer import (
    decode_base64_secret,
    get_signature_headers,
    parse_http_date,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate HMAC request signature headers"
    )
    parser.add_argument(
        "--key-id",
        required=True,
        help="Key id placed in the Authorization header"
    )
    parser.add_argument(
        "--nonce",
        help="Nonce or idempotency key (default: random UUID)"
    )
    parser.add_argument(
        "--date",
        help="RFC1123 request date, e.g. 'Fri, 13 Jan 2023 12:21:17 GMT' (default: now)"
    )
    parser.add_argument(
        "--secret",
        help="Shared secret (default: PAYGUARD_SIGNING_SECRET)"
    )
    parser.add_argument(
        "--secret-encoding",
        choices=["utf8", "base64"],
        default="utf8",
        help="How the secret is encoded"
    )
    parser.add_argument(
        "--version",
        type=int,
        default=1,
        help="Signature version (0 is always HMAC_SHA1)"
    )
    parser.add_argument(
        "--algorithm",
        choices=[a.value for a in HmacAlgorithm if a is not HmacAlgorithm.NONE],
        default=HmacAlgorithm.HMAC_SHA256.value,
        help="HMAC algorithm for version 1 and later"
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    secret = args.secret or os.getenv("PAYGUARD_SIGNING_SECRET")
    if secret is None:
        print("Error: no secret given (--secret or PAYGUARD_SIGNING_SECRET)", file=sys.stderr)
        return 2

    if args.date:
        date = parse_http_date(args.date)
        if date is None:
            print(f"Error: could not parse date: {args.date}", file=sys.stderr)
            return 2
    else:
        date = datetime.now(timezone.utc).replace(microsecond=0)

    try:
        request = SignatureRequest(
            key_id=args.key_id,
            nonce=args.nonce or str(uuid.uuid4()),
            date=date,
            secret=secret,
            secret_encoding=args.secret_encoding,
            version=args.version,
            algorithm=args.algorithm,
        )
        raw_secret = request.secret.get_secret_value()
        secret_bytes = (
            decode_base64_secret(raw_secret) if request.secret_encoding == "base64" else raw_secret.encode("utf-8")
        )
        headers = get_signature_headers(
            request.key_id,
            request.nonce,
            secret_bytes,
            request.date,
            request.version,
            request.algorithm,
        )
    except ValidationError as e:
        fields = ", ".join(str(err["loc"][0]) if err["loc"] else err["msg"] for err in e.errors())
        print(f"Error: invalid arguments: {fields}", file=sys.stderr)
        return 2
    except PayguardError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    print(json.dumps({
        "version": request.version,
        "algorithm": request.algorithm.value,
        "headers": headers,
    }, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
