"""Development registry entrypoint.

Serves the in-memory reference registry over HTTP so validators can be run
end to end without a chain. Goals and requests are seeded through the
localhost-only POST routes, or with ``--registry.demo``.
"""

import argparse
import asyncio
import os
import signal

import bittensor as bt
from dotenv import load_dotenv


def main() -> None:
    if os.environ.get("LOCKIN_TEST_MODE") != "true":
        load_dotenv()

    parser = argparse.ArgumentParser(description="Lock-In Development Registry")
    bt.logging.add_args(parser)
    parser.add_argument("--registry.host", type=str, default="0.0.0.0")
    parser.add_argument("--registry.port", type=int, default=8300)
    parser.add_argument("--registry.quorum_fraction", type=float, default=0.5)
    parser.add_argument("--registry.approval_threshold", type=int, default=60)
    parser.add_argument("--registry.no_verify_signatures", action="store_true")
    parser.add_argument("--registry.demo", action="store_true", help="Seed one goal and register --registry.validator")
    parser.add_argument("--registry.validator", type=str, action="append", default=[])
    args = parser.parse_args()

    host = os.environ.get("LOCKIN_REGISTRY__HOST", getattr(args, "registry.host"))
    port = int(os.environ.get("LOCKIN_REGISTRY__PORT", getattr(args, "registry.port")))
    quorum_fraction = float(os.environ.get(
        "LOCKIN_REGISTRY__QUORUM_FRACTION", getattr(args, "registry.quorum_fraction"),
    ))
    approval_threshold = int(os.environ.get(
        "LOCKIN_REGISTRY__APPROVAL_THRESHOLD", getattr(args, "registry.approval_threshold"),
    ))

    from lockin.validator.models import Goal
    from lockin.validator.registry import ConsensusPolicy, InMemoryRegistry
    from lockin.validator.registry.http_server import RegistryHTTPServer

    registry = InMemoryRegistry(
        policy=ConsensusPolicy(quorum_fraction=quorum_fraction, approval_threshold=approval_threshold),
        verify_signatures=not getattr(args, "registry.no_verify_signatures"),
    )
    for hotkey in getattr(args, "registry.validator"):
        registry.register_validator(hotkey)
    if getattr(args, "registry.demo"):
        registry.add_goal(Goal(
            id=1,
            title="Run 5km",
            description="Complete a 5 kilometre run and share the tracker screenshot.",
            goal_type="fitness",
            target="5km",
        ))

    server = RegistryHTTPServer(registry, host=host, port=port)
    stop = asyncio.Event()

    def _signal_handler(sig, frame):
        bt.logging.info({"registry": "shutdown_signal_received"})
        loop.call_soon_threadsafe(stop.set)

    async def _serve() -> None:
        await server.start()
        try:
            await stop.wait()
        finally:
            await server.stop()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    bt.logging.info({"registry_config": {"host": host, "port": port, "quorum_fraction": quorum_fraction, "approval_threshold": approval_threshold}})
    try:
        loop.run_until_complete(_serve())
    finally:
        loop.close()
        bt.logging.info({"registry": "stopped"})


if __name__ == "__main__":
    main()
