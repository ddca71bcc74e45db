"""Validator entrypoint.

Polls the registry for verification requests selecting this hotkey,
adjudicates each proof with a language model and casts a signed vote.

No chain writes beyond votes, no database, no axon serving.
"""

import argparse
import asyncio
import os
import signal
import sys

import bittensor as bt
from dotenv import load_dotenv


def main() -> None:
    # Load .env if not in test mode
    if os.environ.get("LOCKIN_TEST_MODE") != "true":
        load_dotenv()

    bt.logging.info({"validator": "starting"})

    from lockin.base.config import add_validator_args, load_config

    parser = argparse.ArgumentParser(description="Lock-In Validator")
    bt.Wallet.add_args(parser)
    bt.logging.add_args(parser)
    add_validator_args(parser)
    args = parser.parse_args()

    try:
        config = load_config(args)
    except ValueError as e:
        bt.logging.error({"validator_config_error": str(e)})
        sys.exit(1)

    missing = config.missing_required()
    if missing:
        for name in missing:
            bt.logging.error(f"{name} is required")
        sys.exit(1)

    wallet = bt.Wallet(name=config.wallet_name, hotkey=config.wallet_hotkey)
    validator_id = wallet.hotkey.ss58_address

    bt.logging.info({
        "validator_config": {
            "hotkey": validator_id,
            "registry_url": config.registry_url,
            "gateways": config.gateways,
            "model_provider": config.model_provider,
            "model": config.model_name,
            "poll_interval": config.poll_interval,
            "workers": config.num_workers,
        }
    })

    # Build validator components
    from lockin.validator.health_server import HealthServer
    from lockin.validator.judge import Judge, build_backend
    from lockin.validator.node import NodeConfig, ValidatorNode
    from lockin.validator.processor import RequestProcessor, StageTimeouts
    from lockin.validator.registry import HTTPRegistryClient
    from lockin.validator.state import ValidatorState
    from lockin.validator.store import GatewayArtifactStore

    store = GatewayArtifactStore(
        gateways=config.gateways,
        timeout=config.gateway_timeout,
        ipfs_api_url=config.ipfs_api_url,
        web3_storage_token=config.web3_storage_token,
        pinata_jwt=config.pinata_jwt,
        allow_mock_upload=config.allow_mock_upload,
    )
    backend = build_backend(
        config.model_provider,
        base_url=config.model_url,
        model=config.model_name,
        api_key=config.model_api_key,
        timeout=config.model_timeout,
        temperature=config.model_temperature,
        top_p=config.model_top_p,
    )
    judge = Judge(backend=backend, timeout=config.model_timeout)
    registry = HTTPRegistryClient(
        registry_url=config.registry_url,
        wallet=wallet,
        timeout=config.registry_timeout,
        max_retries=config.registry_max_retries,
    )
    processor = RequestProcessor(
        store=store,
        judge=judge,
        registry=registry,
        validator_id=validator_id,
        timeouts=StageTimeouts(
            fetch=config.fetch_timeout,
            adjudicate=config.adjudicate_timeout,
            upload=config.upload_timeout,
            vote=config.vote_timeout,
        ),
    )
    node = ValidatorNode(
        validator_id=validator_id,
        registry=registry,
        processor=processor,
        state=ValidatorState(validator_id=validator_id),
        config=NodeConfig(
            poll_interval=config.poll_interval,
            health_interval=config.health_interval,
            num_workers=config.num_workers,
            queue_size=config.queue_size,
            shutdown_grace=config.shutdown_grace,
        ),
    )
    health = HealthServer(node, host=config.health_host, port=config.health_port)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    if not loop.run_until_complete(backend.test_connection()):
        bt.logging.error({"validator": "model backend unreachable", "url": config.model_url})
        for client in (store, backend, registry):
            loop.run_until_complete(client.close())
        loop.close()
        sys.exit(1)

    # Graceful shutdown
    def _signal_handler(sig, frame):
        bt.logging.info({"validator": "shutdown_signal_received"})
        loop.call_soon_threadsafe(node.stop)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    async def _serve() -> None:
        await health.start()
        try:
            await node.run()
        finally:
            await health.stop()

    try:
        loop.run_until_complete(_serve())
    except KeyboardInterrupt:
        bt.logging.info({"validator": "keyboard_interrupt"})
    finally:
        loop.run_until_complete(registry.close())
        loop.run_until_complete(backend.close())
        loop.run_until_complete(store.close())
        loop.close()
        bt.logging.info({"validator": "stopped"})


if __name__ == "__main__":
    main()
