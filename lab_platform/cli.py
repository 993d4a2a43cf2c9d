"""
Command line entry point.

Usage:
    lab-provision provision --user-id 7 --dep node --dep redis
    lab-provision provision --user-id 7 --public-key-file ~/.ssh/id_ed25519.pub --direct
    lab-provision worker
    lab-provision usage --user-id 7 --team-id 3
"""

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from lab_platform.core.database import close_db, get_session_factory, init_db
from lab_platform.core.exceptions import LabPlatformError
from lab_platform.core.logging_config import get_logger
from lab_platform.schemas.container import ProvisionRequest
from lab_platform.schemas.quota import Requester
from lab_platform.services.platform import build_platform
from lab_platform.services.quota_ledger import QuotaLedger

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lab-provision", description="Lab container provisioning")
    sub = parser.add_subparsers(dest="command", required=True)

    prov = sub.add_parser("provision", help="Admit and launch one container")
    prov.add_argument("--user-id", type=int, required=True)
    prov.add_argument("--team-id", type=int, default=None)
    prov.add_argument("--name", default=None, help="Container name (default: generated)")
    prov.add_argument("--dep", action="append", default=[], dest="dependencies",
                      help="Dependency catalog key; repeat for several")
    prov.add_argument("--cpu", type=int, default=1)
    prov.add_argument("--memory-mb", type=int, default=1024)
    prov.add_argument("--disk-mb", type=int, default=10240)
    prov.add_argument("--public-key-file", type=Path, default=None,
                      help="OpenSSH public key to inject (default: generate a keypair)")
    prov.add_argument("--direct", action="store_true",
                      help="Run the launch in this process instead of through the queue")

    sub.add_parser("worker", help="Run the operation queue worker pool until interrupted")

    usage = sub.add_parser("usage", help="Show current-period quota usage")
    usage.add_argument("--user-id", type=int, required=True)
    usage.add_argument("--team-id", type=int, default=None)

    return parser


async def _provision(args: argparse.Namespace) -> int:
    public_key = args.public_key_file.read_text().strip() if args.public_key_file else None
    request = ProvisionRequest(
        name=args.name,
        dependencies=args.dependencies,
        cpu=args.cpu,
        memory_mb=args.memory_mb,
        disk_mb=args.disk_mb,
        user_id=args.user_id,
        team_id=args.team_id,
        ssh_public_key=public_key
    )
    platform = build_platform(get_session_factory())

    if args.direct:
        result = await platform.provisioning.provision(request, use_queue=False)
    else:
        # Run a worker pool alongside so the create entry is picked up
        await platform.workers.start()
        try:
            result = await platform.provisioning.provision(request)
        finally:
            await platform.workers.stop()

    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return 0


async def _worker() -> int:
    platform = build_platform(get_session_factory())
    shutdown = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    await platform.workers.start()
    await shutdown.wait()
    logger.info("shutdown_signal_received")
    await platform.workers.stop()
    return 0


async def _usage(args: argparse.Namespace) -> int:
    async with get_session_factory()() as session:
        usage = await QuotaLedger(session).get_usage(
            Requester(user_id=args.user_id, team_id=args.team_id)
        )
    print(json.dumps(usage.to_dict(), indent=2))
    return 0


async def run(args: argparse.Namespace) -> int:
    await init_db()
    try:
        if args.command == "provision":
            return await _provision(args)
        if args.command == "worker":
            return await _worker()
        return await _usage(args)
    finally:
        await close_db()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except LabPlatformError as e:
        print(json.dumps(e.get_api_response(), indent=2), file=sys.stderr)
        return 1
    except ValidationError as e:
        print(str(e), file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
