from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone
import sys

from legalhub.domain.models import ClientSystem
from legalhub.persistence.db import SessionLocal
from legalhub.persistence.repos.tokens import create_api_token


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental token misuse.
    parser = argparse.ArgumentParser(description="Issue an API token for a client system")
    parser.add_argument("--client-id", default=None, help="Existing client system id")
    parser.add_argument("--client-name", default=None, help="Create a new client system with this name")
    parser.add_argument("--name", required=True, help="Token label for auditing")
    parser.add_argument("--rate-limit", type=int, default=None, help="Requests per window override")
    parser.add_argument("--allow-ip", action="append", default=[], help="Allowed caller IP or pattern (repeatable)")
    parser.add_argument("--expires-in-days", type=int, default=None, help="Token lifetime in days")
    return parser


async def _create_token(args: argparse.Namespace) -> int:
    if not args.client_id and not args.client_name:
        raise ValueError("either --client-id or --client-name is required")
    expires_at = None
    if args.expires_in_days:
        expires_at = datetime.now(timezone.utc) + timedelta(days=args.expires_in_days)

    async with SessionLocal() as session:
        if args.client_id:
            client = await session.get(ClientSystem, args.client_id)
            if client is None:
                raise ValueError(f"client system {args.client_id} not found")
        else:
            client = ClientSystem(name=args.client_name, is_active=True)
            session.add(client)
            await session.flush()

        token, raw_token = await create_api_token(
            session,
            client_id=client.id,
            name=args.name,
            rate_limit_override=args.rate_limit,
            allowed_ips=args.allow_ip,
            expires_at=expires_at,
        )
        await session.commit()

    print("API token created:")
    print(f"  client_id: {client.id}")
    print(f"  token_id: {token.id}")
    print(f"  key_prefix: {token.key_prefix}")
    print("  api_token: ")
    print(f"    {raw_token}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_token(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_token failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
