"""
Escrow Lifecycle Coordinator for escrowswap.

Drives one swap through its escrow lifecycle across a source chain (maker
funds, e.g. EVM) and a destination chain (taker funds, e.g. CosmWasm):

1. deploy_src     maker funds locked in the source escrow
2. deploy_dst     taker funds + safety deposit locked in the destination escrow
3. withdraw_dst   maker reveals the secret and withdraws on destination
4. withdraw_src   taker withdraws on source with the revealed secret

States:
    CREATED -> SRC_DEPLOYED -> DST_DEPLOYED -> DST_WITHDRAWN -> SRC_WITHDRAWN
    Off-path: SRC_CANCELLED, DST_CANCELLED

Each step runs under the session lock. Chain time always comes from the
adapter (latest block timestamp), never from the local clock.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, List, Optional

from ..config import CoordinatorConfig
from ..core import (
    SwapState, EscrowStatus, Side, AddressConfidence,
    generate_secret, commit, verify_secret, short_hex,
)
from ..errors import (
    SwapError, AddressDerivationMismatch, TransientChainError, RejectedTransactionError,
    TimingViolationError, InvalidSecretError, InvalidStateError, SessionBusyError,
)
from ..escrow.immutables import Immutables, build, reproject, assert_linked
from ..escrow.timelocks import TimelockSchedule, TimelockStage
from ..chains.base import SourceChainAdapter, DestinationChainAdapter, Funding, DeployResult
from .retry import RetryPolicy
from .session import SwapSession, SessionStore

log = logging.getLogger(__name__)

# Cancellation stage per side
CANCEL_STAGE = {
    Side.SRC: TimelockStage.SRC_CANCELLATION,
    Side.DST: TimelockStage.DST_CANCELLATION,
}

SRC_CANCELLABLE_STATES = (SwapState.SRC_DEPLOYED, SwapState.DST_DEPLOYED, SwapState.DST_CANCELLED)


def _same_address(a: str, b: str) -> bool:
    # EVM checksums and bech32 are both case-insensitive
    return a.lower() == b.lower()


class EscrowCoordinator:
    """
    Runs swap sessions against one source and one destination adapter.

    Sessions are independent; nothing is shared between them except the
    adapters and config.
    """

    def __init__(self, src: SourceChainAdapter, dst: DestinationChainAdapter,
                 config: CoordinatorConfig = None, store: SessionStore = None,
                 sleep=time.sleep):
        self.src = src
        self.dst = dst
        self.config = config or CoordinatorConfig()
        self._sleep = sleep
        self.retry = RetryPolicy(
            max_attempts=self.config.max_attempts,
            backoff_base=self.config.backoff_base,
            backoff_max=self.config.backoff_max,
            sleep=sleep,
        )
        # Single attempt with the same pending-tx bookkeeping
        self._once = RetryPolicy(max_attempts=1, sleep=sleep)

        if store is None and self.config.session_dir:
            store = SessionStore(self.config.session_dir)
        self.store = store

        self.sessions: Dict[str, SwapSession] = {}

    # =========================================================================
    # Sessions
    # =========================================================================

    def open_session(self, order_hash: bytes, maker: str, taker: str,
                     src_token: str, src_amount: int, src_safety_deposit: int,
                     dst_token: str, dst_amount: int, dst_safety_deposit: int,
                     schedule: TimelockSchedule, parameters: bytes = b"",
                     dst_parameters: bytes = None, dst_maker: str = None,
                     dst_taker: str = None) -> SwapSession:
        """
        Create a swap: fresh secret, hashlock, source immutables and their
        destination reprojection.

        dst_maker/dst_taker are the same parties encoded for the destination
        chain (e.g. bech32), when it does not use EVM addresses.

        Raises:
            ValidationError: bad inputs; no session is created
        """
        secret = generate_secret()
        hashlock = commit(secret)

        src_immutables = build(
            order_hash=order_hash,
            hashlock=hashlock,
            maker=maker,
            taker=taker,
            token=src_token,
            amount=src_amount,
            safety_deposit=src_safety_deposit,
            schedule=schedule,
            parameters=parameters,
        )
        dst_immutables = reproject(
            src_immutables,
            new_token=dst_token,
            new_amount=dst_amount,
            new_safety_deposit=dst_safety_deposit,
            parameters=dst_parameters,
            maker=dst_maker,
            taker=dst_taker,
        )
        assert_linked(src_immutables, dst_immutables)

        session = SwapSession(
            swap_id=f"swap_{uuid.uuid4().hex[:12]}",
            secret=secret,
            hashlock=hashlock,
            src_immutables=src_immutables,
            dst_immutables=dst_immutables,
            created_at=int(time.time()),
        )
        self.sessions[session.swap_id] = session
        self._save(session)

        log.info(f"Opened swap {session.swap_id}: hashlock={short_hex(hashlock)}, "
                 f"src={src_amount} {src_token}, dst={dst_amount} {dst_token}")
        return session

    def get_session(self, swap_id: str) -> Optional[SwapSession]:
        return self.sessions.get(swap_id)

    def get_active_sessions(self) -> List[SwapSession]:
        return [s for s in self.sessions.values() if not s.is_terminal]

    def adopt(self, session: SwapSession):
        """Take over a session loaded from the store."""
        self.sessions[session.swap_id] = session

    def _save(self, session: SwapSession):
        if self.store:
            self.store.save(session)

    def _adapter(self, side: Side):
        return self.src if side == Side.SRC else self.dst

    # =========================================================================
    # Step plumbing
    # =========================================================================

    @contextmanager
    def _step(self, session: SwapSession, step: str, side: Side,
              funds_at_risk: bool = False, allow_halted: bool = False):
        """
        Hold the session lock for one step and record its failure.

        Aborting errors halt the session. funds_at_risk marks every failure
        of the step as critical.
        """
        chain = self._adapter(side).chain
        if not session.lock.acquire(blocking=False):
            raise SessionBusyError(f"Session {session.swap_id} is busy", step=step, chain=chain)
        if session.halted and not allow_halted:
            session.lock.release()
            raise InvalidStateError(
                f"Session {session.swap_id} is halted: {(session.error or {}).get('message')}",
                step=step, chain=chain)
        try:
            yield
        except SwapError as e:
            e.step = e.step or step
            e.chain = e.chain or chain
            if funds_at_risk:
                e.funds_at_risk = True

            session.error = e.to_dict()
            session.record(chain, step, "failed",
                           immutables=session.immutables(side),
                           tx_ref=getattr(e, "tx_ref", None),
                           error=session.error)

            if e.aborts_session:
                session.halted = True
            if e.funds_at_risk:
                log.critical(f"[{session.swap_id}] {step} FAILED WITH FUNDS AT RISK: {e}")
            elif e.aborts_session:
                log.error(f"[{session.swap_id}] {step} aborted session: {e}")
            else:
                log.error(f"[{session.swap_id}] {step} failed: {e}")

            self._save(session)
            raise
        finally:
            session.lock.release()

    def _submit(self, session: SwapSession, side: Side, step: str, send,
                before_retry=None, retry: bool = True, reveals_secret: bool = False):
        """
        Send one step's transaction without ever broadcasting it twice.

        A tx that was broadcast but not confirmed is kept in
        session.pending_txs; retries, and later runs of the same step, wait
        for it instead of sending a new one. A rejected tx is forgotten so
        the step can be sent again.
        """
        key = (self._adapter(side).chain, step)

        def remember(tx_ref: str):
            session.pending_txs[key] = tx_ref
            if reveals_secret:
                # The secret is in the mempool from here on
                session.secret_revealed = True
            log.warning(f"[{session.swap_id}] {step} TX {tx_ref} broadcast, awaiting confirmation")
            self._save(session)

        policy = self.retry if retry else self._once
        try:
            result = policy.submit(send, f"[{session.swap_id}] {step}",
                                   pending=session.pending_txs.get(key),
                                   on_pending=remember, before_retry=before_retry)
        except RejectedTransactionError:
            session.pending_txs.pop(key, None)
            raise
        session.pending_txs.pop(key, None)
        return result

    def _mark_deployed(self, session: SwapSession, side: Side, step: str, result: DeployResult):
        """
        Record a funded escrow as soon as its deploy tx is confirmed.

        The address from the receipt or events is kept as provisional
        (no confidence) until resolution finishes.
        """
        session.tx_log[(self._adapter(side).chain, step)] = result.tx_ref
        session.set_status(side, EscrowStatus.DEPLOYED)
        session.state = SwapState.SRC_DEPLOYED if side == Side.SRC else SwapState.DST_DEPLOYED
        session.set_address(side, result.escrow_address, None)
        self._save(session)

    def _set_deployed_at(self, session: SwapSession, side: Side, deployed_at: int) -> Immutables:
        immutables = session.immutables(side)
        immutables = replace(immutables,
                             timelocks=immutables.timelocks.with_deployed_at(deployed_at))
        if side == Side.SRC:
            session.src_immutables, session.src_deployed_at = immutables, deployed_at
        else:
            session.dst_immutables, session.dst_deployed_at = immutables, deployed_at
        return immutables

    def _require_state(self, session: SwapSession, *states: SwapState):
        if session.state not in states:
            expected = ", ".join(s.value for s in states)
            raise InvalidStateError(
                f"Session {session.swap_id} is {session.state.value}, expected {expected}")

    def _chain_time(self, adapter) -> int:
        return self.retry.call(adapter.chain_time, f"{adapter.chain} chain_time")

    def _await_window(self, adapter, session: SwapSession, side: Side,
                      open_stage: TimelockStage, close_stage: TimelockStage) -> int:
        """
        Block until chain time is inside [open, close - buffer).

        Returns:
            Chain time at which the window was found open

        Raises:
            TimingViolationError: window already closed, or not yet open and
                waiting is disabled
        """
        tl = session.immutables(side).timelocks
        deployed_at = session.deployed_at(side)
        start = tl.stage_time(open_stage, deployed_at)
        end = tl.stage_time(close_stage, deployed_at)
        close_at = end - self.config.safety_buffer_seconds

        while True:
            now = self._chain_time(adapter)
            if now >= close_at:
                raise TimingViolationError(
                    f"{side.value} withdrawal window closed: now={now}, "
                    f"window=[{start}, {end}), buffer={self.config.safety_buffer_seconds}s",
                    now=now, window=(start, end))
            if now >= start:
                return now
            if not self.config.wait_for_windows:
                raise TimingViolationError(
                    f"{side.value} withdrawal window not open yet: now={now}, opens at {start}",
                    now=now, window=(start, end))

            wait = min(self.config.window_poll_interval, start - now)
            log.info(f"[{session.swap_id}] waiting {wait:.0f}s for {side.value} "
                     f"withdrawal window (opens at {start})")
            self._sleep(wait)

    # =========================================================================
    # Step 1: source escrow
    # =========================================================================

    def deploy_src(self, session: SwapSession, funding: Funding) -> SwapSession:
        """
        Deploy and fund the source escrow.

        A failure before the deploy is confirmed leaves the session in
        CREATED. Once funded, the escrow is recorded first; a failure to
        resolve its address then halts the session, leaving cancel() as the
        way out.
        """
        with self._step(session, "deploy_src", Side.SRC):
            self._require_state(session, SwapState.CREATED)

            result: DeployResult = self._submit(
                session, Side.SRC, "deploy_src",
                lambda pending: self.src.deploy(session.src_immutables, funding, pending_tx=pending))
            self._mark_deployed(session, Side.SRC, "deploy_src", result)

            try:
                deployed_at = result.deployed_at
                if deployed_at is None:
                    deployed_at = self._chain_time(self.src)
                    log.warning(f"[{session.swap_id}] src deploy reported no timestamp, "
                                f"using chain time {deployed_at}")
                immutables = self._set_deployed_at(session, Side.SRC, deployed_at)

                derived = self.retry.call(
                    lambda: self.src.derive_address(immutables),
                    f"[{session.swap_id}] derive src address")

                if result.escrow_address:
                    if not _same_address(result.escrow_address, derived):
                        raise AddressDerivationMismatch(
                            f"Source escrow from receipt {result.escrow_address} "
                            f"!= derived {derived}")
                    confidence = AddressConfidence.CONFIRMED
                else:
                    confidence = AddressConfidence.DERIVED
            except SwapError as e:
                session.halted = True
                e.funds_at_risk = True
                raise

            session.set_address(Side.SRC, derived, confidence)
            session.record(self.src.chain, "deploy_src", "ok", immutables=immutables,
                           escrow_address=derived, tx_ref=result.tx_ref)
            self._save(session)

        log.info(f"[{session.swap_id}] Source escrow deployed at {derived} "
                 f"({confidence.value}), deployed_at={deployed_at}")
        return session

    # =========================================================================
    # Step 2: destination escrow
    # =========================================================================

    def deploy_dst(self, session: SwapSession, funding: Funding) -> SwapSession:
        """
        Deploy and fund the destination escrow.

        New broadcasts stop once source chain time reaches
        src_cancellation - safety_buffer; the session is then flagged
        src_cancel_required. A deploy tx already broadcast is still waited
        for. Rejections leave the session in SRC_DEPLOYED.
        """
        chain = self.dst.chain
        key = (chain, "deploy_dst")
        with self._step(session, "deploy_dst", Side.DST):
            self._require_state(session, SwapState.SRC_DEPLOYED)
            assert_linked(session.src_immutables, session.dst_immutables)

            src_cancel_ts = session.src_immutables.timelocks.stage_time(
                TimelockStage.SRC_CANCELLATION)
            deadline = src_cancel_ts - self.config.safety_buffer_seconds
            dst_cancel_offset = session.dst_immutables.timelocks.dst_cancellation

            def check_deadline(delay: float = 0):
                if key in session.pending_txs:
                    return
                now = self._chain_time(self.src)
                if now + delay >= deadline:
                    session.src_cancel_required = True
                    raise TimingViolationError(
                        f"Destination deploy out of time: src chain time {now} "
                        f"(+{delay:.0f}s) reaches src_cancellation {src_cancel_ts} "
                        f"- buffer {self.config.safety_buffer_seconds}s; source must be cancelled",
                        now=now, window=(session.src_deployed_at, src_cancel_ts))

            check_deadline()

            # Destination must become cancellable before the source
            dst_now = self._chain_time(self.dst)
            if key not in session.pending_txs and dst_now + dst_cancel_offset >= src_cancel_ts:
                session.src_cancel_required = True
                raise TimingViolationError(
                    f"Destination cancellation {dst_now + dst_cancel_offset} would not "
                    f"precede src_cancellation {src_cancel_ts}; source must be cancelled",
                    now=dst_now, window=(session.src_deployed_at, src_cancel_ts))

            result: DeployResult = self._submit(
                session, Side.DST, "deploy_dst",
                lambda pending: self.dst.deploy(session.dst_immutables, src_cancel_ts, funding,
                                                pending_tx=pending),
                before_retry=check_deadline)
            self._mark_deployed(session, Side.DST, "deploy_dst", result)

            try:
                deployed_at = result.deployed_at
                if deployed_at is None:
                    deployed_at = dst_now
                    log.warning(f"[{session.swap_id}] dst deploy reported no timestamp, "
                                f"using chain time {deployed_at}")
                immutables = self._set_deployed_at(session, Side.DST, deployed_at)
                address, confidence = self._resolve_dst_address(session, result, immutables)
            except SwapError as e:
                session.halted = True
                e.funds_at_risk = True
                raise

            session.set_address(Side.DST, address, confidence)
            session.record(chain, "deploy_dst", "ok", immutables=immutables,
                           escrow_address=address, tx_ref=result.tx_ref)
            self._save(session)

        log.info(f"[{session.swap_id}] Destination escrow deployed at {address} "
                 f"({confidence.value}), deployed_at={deployed_at}")
        return session

    def _derive_dst(self, session: SwapSession, immutables: Immutables) -> Optional[str]:
        try:
            return self.retry.call(
                lambda: self.dst.derive_address(immutables),
                f"[{session.swap_id}] derive dst address")
        except TransientChainError as e:
            log.warning(f"[{session.swap_id}] dst address derivation unavailable: {e}")
            return None

    def _resolve_dst_address(self, session: SwapSession, result: DeployResult,
                             immutables: Immutables):
        """
        Pick the destination escrow address.

        Order: chain events (CONFIRMED), derivation (DERIVED), operator
        fallback (FALLBACK, only when enabled).
        """
        derived = self._derive_dst(session, immutables)

        if result.escrow_address:
            if derived and not _same_address(result.escrow_address, derived):
                raise AddressDerivationMismatch(
                    f"Destination escrow from events {result.escrow_address} "
                    f"!= derived {derived}")
            return result.escrow_address, AddressConfidence.CONFIRMED

        if derived:
            log.warning(f"[{session.swap_id}] No escrow address in dst events, "
                        f"using derived {derived}")
            return derived, AddressConfidence.DERIVED

        if self.config.allow_fallback_address and self.config.fallback_dst_address:
            log.warning(f"[{session.swap_id}] DEGRADED: dst escrow address neither reported "
                        f"nor derivable, using configured fallback "
                        f"{self.config.fallback_dst_address}")
            return self.config.fallback_dst_address, AddressConfidence.FALLBACK

        raise AddressDerivationMismatch(
            "Destination escrow address neither reported by chain events nor derivable")

    # =========================================================================
    # Step 3: destination withdrawal (secret reveal)
    # =========================================================================

    def withdraw_dst(self, session: SwapSession, secret: bytes = None) -> SwapSession:
        """
        Withdraw the destination escrow to the maker, revealing the secret.

        Raises:
            InvalidSecretError: secret does not match the hashlock (state unchanged)
            TimingViolationError: outside [dst_withdrawal, dst_cancellation)
        """
        chain = self.dst.chain
        with self._step(session, "withdraw_dst", Side.DST):
            self._require_state(session, SwapState.DST_DEPLOYED)

            secret = session.secret if secret is None else secret
            if secret is None or not verify_secret(secret, session.hashlock):
                raise InvalidSecretError(
                    f"Secret does not match hashlock {short_hex(session.hashlock)}")

            if (chain, "withdraw_dst") not in session.pending_txs:
                self._await_window(self.dst, session, Side.DST,
                                   TimelockStage.DST_WITHDRAWAL, TimelockStage.DST_CANCELLATION)

            tx_ref = self._submit(
                session, Side.DST, "withdraw_dst",
                lambda pending: self.dst.withdraw(session.dst_address, secret,
                                                  session.dst_immutables, pending_tx=pending),
                reveals_secret=True)

            session.secret = secret
            session.secret_revealed = True
            session.dst_status = EscrowStatus.WITHDRAWN
            session.state = SwapState.DST_WITHDRAWN
            session.record(chain, "withdraw_dst", "ok", immutables=session.dst_immutables,
                           escrow_address=session.dst_address, tx_ref=tx_ref)
            self._save(session)

        log.info(f"[{session.swap_id}] Destination withdrawn, secret revealed "
                 f"({short_hex(secret)})")
        return session

    # =========================================================================
    # Step 4: source withdrawal
    # =========================================================================

    def withdraw_src(self, session: SwapSession) -> SwapSession:
        """
        Withdraw the source escrow to the taker with the revealed secret.

        The secret is public at this point: every failure here leaves the
        taker exposed and is raised with funds_at_risk=True.
        """
        chain = self.src.chain
        with self._step(session, "withdraw_src", Side.SRC, funds_at_risk=True):
            self._require_state(session, SwapState.DST_WITHDRAWN)

            secret = session.secret
            if secret is None or not verify_secret(secret, session.hashlock):
                raise InvalidSecretError(
                    f"Revealed secret does not match hashlock {short_hex(session.hashlock)}")

            if (chain, "withdraw_src") not in session.pending_txs:
                self._await_window(self.src, session, Side.SRC,
                                   TimelockStage.SRC_WITHDRAWAL, TimelockStage.SRC_CANCELLATION)

            tx_ref = self._submit(
                session, Side.SRC, "withdraw_src",
                lambda pending: self.src.withdraw(session.src_address, secret,
                                                  session.src_immutables, pending_tx=pending))

            session.src_status = EscrowStatus.WITHDRAWN
            session.state = SwapState.SRC_WITHDRAWN
            session.record(chain, "withdraw_src", "ok", immutables=session.src_immutables,
                           escrow_address=session.src_address, tx_ref=tx_ref)
            self._save(session)

        log.info(f"[{session.swap_id}] Source withdrawn, swap complete")
        return session

    def run(self, session: SwapSession, funding_src: Funding,
            funding_dst: Funding) -> SwapSession:
        """Drive a session from its current state to SRC_WITHDRAWN."""
        if session.state == SwapState.CREATED:
            self.deploy_src(session, funding_src)
        if session.state == SwapState.SRC_DEPLOYED:
            self.deploy_dst(session, funding_dst)
        if session.state == SwapState.DST_DEPLOYED:
            self.withdraw_dst(session)
        if session.state == SwapState.DST_WITHDRAWN:
            self.withdraw_src(session)
        return session

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancellation_due(self, session: SwapSession, side: Side, now: int = None) -> bool:
        """True once a deployed escrow has passed its cancellation time."""
        if session.status(side) != EscrowStatus.DEPLOYED:
            return False
        deployed_at = session.deployed_at(side)
        if deployed_at is None:
            return False
        if now is None:
            now = self._chain_time(self._adapter(side))
        cancel_at = session.immutables(side).timelocks.stage_time(CANCEL_STAGE[side], deployed_at)
        return now >= cancel_at

    def _recover_address(self, session: SwapSession, side: Side) -> str:
        """Address of a funded escrow whose deploy step did not resolve one."""
        address = session.address(side)
        if address:
            return address

        immutables = session.immutables(side)
        if side == Side.SRC:
            address = self.retry.call(lambda: self.src.derive_address(immutables),
                                      f"[{session.swap_id}] derive src address")
            confidence = AddressConfidence.DERIVED
        else:
            address = self._derive_dst(session, immutables)
            confidence = AddressConfidence.DERIVED
            if not address and self.config.allow_fallback_address:
                address = self.config.fallback_dst_address or None
                confidence = AddressConfidence.FALLBACK

        if not address:
            raise AddressDerivationMismatch(
                f"{side.value} escrow address unknown; cancel it manually "
                f"(deploy tx {session.tx_log.get((self._adapter(side).chain, f'deploy_{side.value}'))})")
        session.set_address(side, address, confidence)
        log.warning(f"[{session.swap_id}] {side.value} escrow address recovered: "
                    f"{address} ({confidence.value})")
        return address

    def cancel(self, session: SwapSession, side: Side) -> SwapSession:
        """
        Cancel one escrow after its cancellation time.

        Allowed on halted sessions, which is how funds are recovered after
        an aborting error. The adapter owns retries for the cancel call;
        a cancel tx left unconfirmed is awaited on the next call.
        """
        adapter = self._adapter(side)
        step = f"cancel_{side.value}"
        with self._step(session, step, side, allow_halted=True):
            if session.status(side) != EscrowStatus.DEPLOYED:
                raise InvalidStateError(
                    f"{side.value} escrow is {session.status(side).value}, cannot cancel")
            if side == Side.SRC:
                self._require_state(session, *SRC_CANCELLABLE_STATES)
            if session.deployed_at(side) is None:
                raise InvalidStateError(
                    f"{side.value} escrow deployment time unknown, cannot compute cancellation")

            now = self._chain_time(adapter)
            if not self.cancellation_due(session, side, now=now):
                cancel_at = session.immutables(side).timelocks.stage_time(
                    CANCEL_STAGE[side], session.deployed_at(side))
                raise TimingViolationError(
                    f"{side.value} cancellation not due: now={now}, opens at {cancel_at}",
                    now=now, window=(cancel_at, None))

            immutables = session.immutables(side)
            address = self._recover_address(session, side)
            tx_ref = self._submit(
                session, side, step,
                lambda pending: adapter.cancel(address, immutables, pending_tx=pending),
                retry=False)

            session.set_status(side, EscrowStatus.CANCELLED)
            if side == Side.SRC:
                session.state = SwapState.SRC_CANCELLED
                session.src_cancel_required = False
            elif session.state == SwapState.DST_DEPLOYED:
                session.state = SwapState.DST_CANCELLED
            session.record(adapter.chain, step, "ok", immutables=immutables,
                           escrow_address=address, tx_ref=tx_ref)
            self._save(session)

        log.warning(f"[{session.swap_id}] {side.value} escrow {address} cancelled ({tx_ref})")
        return session
