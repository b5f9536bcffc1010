"""Mint capability tokens for operators and node agents."""

from __future__ import annotations

import argparse
import os
import sys

from ..common.security import NODE_AUDIENCE, OPERATOR_AUDIENCE, TOKEN_TTL_SECONDS, Role, mint_capability_token

_AUDIENCES = {"node": NODE_AUDIENCE, "operator": OPERATOR_AUDIENCE}
_SECRET_ENV = {"node": "SSHMGMT_NODE_TOKEN_SECRET", "operator": "SSHMGMT_JWT_SECRET"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mint an sshmgmt capability token")
    parser.add_argument("deployment", choices=sorted(_AUDIENCES), help="Which service will accept the token")
    parser.add_argument(
        "--role",
        choices=[role.value for role in Role],
        default=Role.PRIVILEGED.value,
        help="Role embedded in the token",
    )
    parser.add_argument("--secret", help="Signing secret (defaults to the deployment's environment variable)")
    parser.add_argument("--ttl", type=int, default=TOKEN_TTL_SECONDS, help="Token lifetime in seconds")
    return parser


def mint(args: argparse.Namespace) -> str:
    secret = args.secret or os.environ.get(_SECRET_ENV[args.deployment])
    if not secret:
        raise SystemExit(f"no signing secret: pass --secret or set {_SECRET_ENV[args.deployment]}")
    return mint_capability_token(
        secret=secret,
        role=Role.parse(args.role),
        audience=_AUDIENCES[args.deployment],
        ttl_seconds=args.ttl,
    )


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    sys.stdout.write(mint(args) + "\n")


if __name__ == "__main__":
    main()
