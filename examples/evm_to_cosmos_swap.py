#!/usr/bin/env python3
"""
Example: Sepolia ETH -> Osmosis OSMO escrow swap

Runs the full escrow lifecycle from the resolver's seat:

1. Maker signs an order, resolver fills it (source escrow on Sepolia)
2. Resolver locks OSMO + safety deposit (destination escrow on Osmosis)
3. Maker's secret is revealed by withdrawing OSMO to the maker
4. Resolver withdraws ETH from the source escrow with the revealed secret

If a step fails, the session is written to --session-dir and, with
--auto-cancel, a watcher refunds both escrows once their timelocks allow.

Environment:
    EVM_RPC_URL, EVM_RESOLVER, EVM_ESCROW_FACTORY, EVM_PRIVATE_KEY (resolver)
    MAKER_PRIVATE_KEY
    COSMOS_LCD_URL, COSMOS_RPC_URL, COSMOS_ESCROW_FACTORY, COSMOS_KEY_NAME, COSMOS_CLI_PATH
    SWAP_* (coordinator, see CoordinatorConfig.from_env)

Usage:
    python evm_to_cosmos_swap.py --maker-cosmos osmo1... --taker-cosmos osmo1...
"""

import argparse
import json
import os
import secrets
import sys
import time
import logging
from pathlib import Path

# Add package to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from eth_account import Account

from escrowswap.core import DEFAULT_OFFSETS, EscrowStatus
from escrowswap.config import EVMConfig, CosmosConfig, CoordinatorConfig
from escrowswap.errors import SwapError
from escrowswap.escrow import OrderParams, build_schedule, compute_order_hash, NATIVE_TOKEN
from escrowswap.chains import EVMEscrowAdapter, CosmosEscrowAdapter, Funding, sign_order
from escrowswap.swap import EscrowCoordinator, CancellationWatcher
from escrowswap.swap.watcher import WatcherConfig

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(
        description="Cross-chain escrow swap: EVM source -> CosmWasm destination"
    )
    parser.add_argument("--src-amount", type=int, default=10**13,
                        help="Source amount in wei (default 0.00001 ETH)")
    parser.add_argument("--src-deposit", type=int, default=10**14,
                        help="Source safety deposit in wei")
    parser.add_argument("--dst-amount", type=int, default=10,
                        help="Destination amount in base denom units (default 10 uosmo)")
    parser.add_argument("--dst-deposit", type=int, default=10000,
                        help="Destination safety deposit in base denom units")
    parser.add_argument("--maker-cosmos", type=str, required=True,
                        help="Maker's address on the destination chain")
    parser.add_argument("--taker-cosmos", type=str, required=True,
                        help="Resolver's address on the destination chain (signs create_escrow_dst)")
    parser.add_argument("--session-dir", type=str, default="~/.escrowswap/sessions",
                        help="Where session logs are written")
    parser.add_argument("--auto-cancel", action="store_true",
                        help="On failure, keep running and cancel escrows when due")
    return parser.parse_args()


def main():
    args = parse_args()

    maker_key = os.environ.get("MAKER_PRIVATE_KEY", "")
    if not maker_key:
        log.error("MAKER_PRIVATE_KEY not set")
        sys.exit(1)
    maker = Account.from_key(maker_key).address

    # =================================================================
    # 1. Adapters and coordinator
    # =================================================================
    evm_config = EVMConfig.from_env()
    cosmos_config = CosmosConfig.from_env()
    coordinator_config = CoordinatorConfig.from_env()
    if coordinator_config.session_dir is None:
        coordinator_config.session_dir = Path(os.path.expanduser(args.session_dir))

    evm = EVMEscrowAdapter(evm_config)
    cosmos = CosmosEscrowAdapter(cosmos_config)
    coordinator = EscrowCoordinator(evm, cosmos, coordinator_config)

    taker = evm.account.address
    log.info(f"Maker: {maker} / {args.maker_cosmos}")
    log.info(f"Resolver: {taker} / {args.taker_cosmos}")

    # =================================================================
    # 2. Order, signature, session
    # =================================================================
    order = OrderParams(
        salt=secrets.token_bytes(32),
        maker=maker,
        receiver=maker,
        maker_asset=NATIVE_TOKEN,
        taker_asset=NATIVE_TOKEN,
        making_amount=args.src_amount,
        taking_amount=args.dst_amount,
    )
    order_hash = compute_order_hash(order)
    fill = sign_order(order, order_hash, maker_key)

    schedule = build_schedule(**DEFAULT_OFFSETS)

    session = coordinator.open_session(
        order_hash=order_hash,
        maker=maker,
        taker=taker,
        src_token=NATIVE_TOKEN,
        src_amount=args.src_amount,
        src_safety_deposit=args.src_deposit,
        dst_token=cosmos_config.denom,
        dst_amount=args.dst_amount,
        dst_safety_deposit=args.dst_deposit,
        schedule=schedule,
        dst_maker=args.maker_cosmos,
        dst_taker=args.taker_cosmos,
    )

    # =================================================================
    # 3. Run the lifecycle
    # =================================================================
    try:
        coordinator.run(
            session,
            Funding(amount=args.src_amount, safety_deposit=args.src_deposit, fill=fill),
            Funding(amount=args.dst_amount, safety_deposit=args.dst_deposit,
                    denom=cosmos_config.denom),
        )
        log.info(f"Swap {session.swap_id} completed")
    except SwapError as e:
        log.error(f"Swap {session.swap_id} stopped at {e.step}: {e}")
        if e.funds_at_risk:
            log.critical("Funds at risk - inspect the session log and act manually")

        if args.auto_cancel:
            recover(coordinator, session)
    finally:
        cosmos.close()

    print(json.dumps(session.to_dict(), indent=2))


def recover(coordinator: EscrowCoordinator, session):
    """Run the cancellation watcher until no escrow of the session holds funds."""
    watcher = CancellationWatcher(coordinator, WatcherConfig(poll_interval=5, auto_cancel=True))
    watcher.watch(session)
    watcher.start()

    try:
        while EscrowStatus.DEPLOYED in (session.src_status, session.dst_status):
            time.sleep(5)
    except KeyboardInterrupt:
        log.info("Interrupted; session log kept for manual recovery")
    finally:
        watcher.stop()


if __name__ == "__main__":
    main()
