"""Wallet adapters, one per chain, behind a single async interface.

All amounts are ``Decimal`` in the chain's native unit (LTC, BTC, SOL, ETH).
Reads go through :func:`with_retry`; ``send_payment`` is never retried here
because a failed broadcast is ambiguous and must be reconciled against the
idempotency record first.
"""

import asyncio
import base64
import json
import logging
import random
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, TypeVar

import aiohttp
import base58
from eth_account import Account
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction
from web3 import Web3

from .config import Settings
from .errors import ConfigError, RpcFatal, RpcTransient
from .units import quantize, to_decimal

log = logging.getLogger(__name__)

T = TypeVar("T")

INBOUND = "in"
OUTBOUND = "out"

LAMPORTS_PER_SOL = Decimal(1_000_000_000)
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"

# Core wallet errors that clear up on their own (warming up, wallet busy)
_CORE_TRANSIENT_CODES = {-28, -4}

_SOLANA_CONFIRMATIONS = {"processed": 0, "confirmed": 1, "finalized": 32}


@dataclass(frozen=True)
class ChainTransaction:
    tx_id: str
    amount: Decimal
    confirmations: int
    timestamp: float
    direction: str = INBOUND


@dataclass(frozen=True)
class SendResult:
    tx_id: str


async def with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    retries: int = 3,
    base_delay: float = 0.5,
    what: str = "rpc call",
) -> T:
    """Run ``call``; retry ``RpcTransient`` with backoff, then give up as ``RpcFatal``."""
    attempt = 0
    while True:
        try:
            return await call()
        except RpcTransient as exc:
            attempt += 1
            if attempt > retries:
                raise RpcFatal(f"{what} failed after {attempt} attempts: {exc}") from exc
            delay = base_delay * (2 ** (attempt - 1)) + random.uniform(0, base_delay)
            log.warning("%s failed (%s); retry %d/%d in %.2fs", what, exc, attempt, retries, delay)
            await asyncio.sleep(delay)


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 client over a lazily created aiohttp session."""

    def __init__(
        self,
        url: str,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout_s: float = 15.0,
        transient_codes: Iterable[int] = (),
    ) -> None:
        self.url = url
        self._auth = aiohttp.BasicAuth(user, password or "") if user else None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._transient_codes = set(transient_codes)
        self._session: Optional[aiohttp.ClientSession] = None
        self._ids = 0

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout, auth=self._auth)
        return self._session

    async def call(self, method: str, params: Optional[list] = None) -> Any:
        self._ids += 1
        body = {"jsonrpc": "2.0", "id": self._ids, "method": method, "params": params or []}
        try:
            async with self._get_session().post(self.url, json=body) as resp:
                status = resp.status
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RpcTransient(f"{method}: {exc.__class__.__name__}: {exc}") from exc
        return self.parse_response(method, status, text)

    def parse_response(self, method: str, status: int, text: str) -> Any:
        try:
            payload = json.loads(text, parse_float=Decimal) if text else None
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("error"):
            error = payload["error"]
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message") if isinstance(error, dict) else str(error)
            if code in self._transient_codes:
                raise RpcTransient(f"{method}: {message} ({code})")
            raise RpcFatal(f"{method}: {message} ({code})")
        if status == 429 or status >= 500:
            raise RpcTransient(f"{method}: HTTP {status}")
        if status != 200 or not isinstance(payload, dict):
            raise RpcFatal(f"{method}: unexpected response (HTTP {status})")
        return payload.get("result")

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


class ChainAdapter(ABC):
    chain: str = ""

    def __init__(self, *, payout_address: Optional[str] = None, retries: int = 3, backoff_s: float = 0.5) -> None:
        self.payout_address = payout_address
        self.retries = retries
        self.backoff_s = backoff_s

    async def _read(self, call: Callable[[], Awaitable[T]], what: str) -> T:
        return await with_retry(call, retries=self.retries, base_delay=self.backoff_s, what=f"{self.chain} {what}")

    @abstractmethod
    async def get_balance(self) -> Decimal:
        ...

    @abstractmethod
    async def send_payment(self, address: str, amount: Decimal) -> SendResult:
        ...

    @abstractmethod
    async def get_recent_transactions(self, limit: int = 25) -> List[ChainTransaction]:
        """Recent inbound transfers to the watched address, newest first."""

    async def get_payout_address(self) -> Optional[str]:
        return self.payout_address

    def own_addresses(self) -> Set[str]:
        """Addresses that belong to this wallet and must never be paid."""
        return {self.payout_address} if self.payout_address else set()

    async def close(self) -> None:
        return None


class CoreRpcAdapter(ChainAdapter):
    """Litecoin Core / Bitcoin Core wallet over JSON-RPC."""

    def __init__(
        self,
        chain: str,
        url: str,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        payout_address: Optional[str] = None,
        timeout_s: float = 15.0,
        retries: int = 3,
        backoff_s: float = 0.5,
    ) -> None:
        super().__init__(payout_address=payout_address, retries=retries, backoff_s=backoff_s)
        self.chain = chain.upper()
        self.rpc = JsonRpcClient(
            url,
            user=user,
            password=password,
            timeout_s=timeout_s,
            transient_codes=_CORE_TRANSIENT_CODES,
        )

    async def get_balance(self) -> Decimal:
        result = await self._read(lambda: self.rpc.call("getbalance"), "getbalance")
        return to_decimal(result, Decimal(0))

    async def send_payment(self, address: str, amount: Decimal) -> SendResult:
        value = str(quantize(amount, self.chain))
        txid = await self.rpc.call("sendtoaddress", [address, value])
        if not txid:
            raise RpcFatal("sendtoaddress returned no txid")
        log.info("%s broadcast %s to %s: %s", self.chain, value, address, txid)
        return SendResult(tx_id=str(txid))

    async def get_recent_transactions(self, limit: int = 25) -> List[ChainTransaction]:
        rows = await self._read(lambda: self.rpc.call("listtransactions", ["*", limit]), "listtransactions")
        return parse_core_transactions(rows or [])

    async def get_payout_address(self) -> Optional[str]:
        if not self.payout_address:
            self.payout_address = await self._read(lambda: self.rpc.call("getnewaddress"), "getnewaddress")
            log.info("%s payout address allocated: %s", self.chain, self.payout_address)
        return self.payout_address

    async def close(self) -> None:
        await self.rpc.close()


def parse_core_transactions(rows: List[dict]) -> List[ChainTransaction]:
    txs = []
    for row in rows:
        if row.get("category") != "receive":
            continue
        amount = to_decimal(row.get("amount"))
        if amount is None or amount <= 0 or not row.get("txid"):
            continue
        txs.append(
            ChainTransaction(
                tx_id=str(row["txid"]),
                amount=amount,
                confirmations=int(row.get("confirmations") or 0),
                timestamp=float(row.get("time") or row.get("timereceived") or 0),
                direction=INBOUND,
            )
        )
    txs.sort(key=lambda tx: tx.timestamp, reverse=True)
    return txs


def balance_delta_transaction(
    signature: str,
    tx: Optional[dict],
    watched: str,
    *,
    confirmations: int = 1,
    block_time: Optional[float] = None,
) -> Optional[ChainTransaction]:
    """Derive a transfer from the watched key's pre/post balances.

    Returns None for failed, unrelated or outgoing transactions.
    """
    if not tx:
        return None
    meta = tx.get("meta") or {}
    if meta.get("err") is not None:
        return None
    keys = (tx.get("transaction") or {}).get("message", {}).get("accountKeys") or []
    keys = [k.get("pubkey") if isinstance(k, dict) else k for k in keys]
    loaded = meta.get("loadedAddresses") or {}
    keys += list(loaded.get("writable") or []) + list(loaded.get("readonly") or [])
    try:
        index = keys.index(watched)
        pre = int(meta["preBalances"][index])
        post = int(meta["postBalances"][index])
    except (ValueError, KeyError, IndexError, TypeError):
        return None
    if post <= pre:
        return None
    return ChainTransaction(
        tx_id=signature,
        amount=Decimal(post - pre) / LAMPORTS_PER_SOL,
        confirmations=confirmations,
        timestamp=float(block_time if block_time is not None else tx.get("blockTime") or 0),
        direction=INBOUND,
    )


class SolanaAdapter(ChainAdapter):
    chain = "SOL"

    def __init__(
        self,
        url: str,
        *,
        private_key: Optional[str] = None,
        payout_address: Optional[str] = None,
        timeout_s: float = 15.0,
        retries: int = 3,
        backoff_s: float = 0.5,
    ) -> None:
        super().__init__(payout_address=payout_address, retries=retries, backoff_s=backoff_s)
        self.rpc = JsonRpcClient(url, timeout_s=timeout_s)
        self._keypair: Optional[Keypair] = None
        if private_key:
            try:
                self._keypair = Keypair.from_bytes(base58.b58decode(private_key))
            except ValueError as exc:
                raise ConfigError("SOL_PRIVATE_KEY must be base58 of the 64-byte secret key") from exc
        self.signer_address = str(self._keypair.pubkey()) if self._keypair else None
        if not self.payout_address:
            self.payout_address = self.signer_address

    def own_addresses(self) -> Set[str]:
        return {a for a in (self.payout_address, self.signer_address) if a}

    @property
    def watched(self) -> Optional[str]:
        return self.payout_address

    async def get_balance(self) -> Decimal:
        if not self.signer_address:
            raise RpcFatal("no Solana signer configured")
        result = await self._read(
            lambda: self.rpc.call("getBalance", [self.signer_address, {"commitment": "confirmed"}]),
            "getBalance",
        )
        lamports = (result or {}).get("value", 0)
        return Decimal(int(lamports)) / LAMPORTS_PER_SOL

    async def send_payment(self, address: str, amount: Decimal) -> SendResult:
        if self._keypair is None:
            raise RpcFatal("no Solana signer configured")
        lamports = int(quantize(amount, "SOL") * LAMPORTS_PER_SOL)
        payer = self._keypair.pubkey()
        try:
            recipient = Pubkey.from_string(address)
        except ValueError as exc:
            raise RpcFatal(f"bad recipient {address}: {exc}") from exc
        ix = Instruction(
            program_id=Pubkey.from_string(SYSTEM_PROGRAM_ID),
            accounts=[
                AccountMeta(payer, is_signer=True, is_writable=True),
                AccountMeta(recipient, is_signer=False, is_writable=True),
            ],
            data=(2).to_bytes(4, "little") + lamports.to_bytes(8, "little"),
        )
        latest = await self._read(
            lambda: self.rpc.call("getLatestBlockhash", [{"commitment": "finalized"}]),
            "getLatestBlockhash",
        )
        blockhash = Hash.from_string(latest["value"]["blockhash"])
        txn = Transaction.new_unsigned(Message([ix], payer=payer))
        txn.sign([self._keypair], blockhash)
        encoded = base64.b64encode(bytes(txn)).decode("ascii")
        signature = await self.rpc.call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": "confirmed"}],
        )
        if not signature:
            raise RpcFatal("sendTransaction returned no signature")
        log.info("SOL broadcast %s to %s: %s", amount, address, signature)
        return SendResult(tx_id=str(signature))

    async def get_recent_transactions(self, limit: int = 25) -> List[ChainTransaction]:
        watched = self.watched
        if not watched:
            return []
        signatures = await self._read(
            lambda: self.rpc.call("getSignaturesForAddress", [watched, {"limit": limit}]),
            "getSignaturesForAddress",
        )
        txs = []
        for info in signatures or []:
            if info.get("err") is not None:
                continue
            sig = info["signature"]
            detail = await self._read(
                lambda sig=sig: self.rpc.call(
                    "getTransaction",
                    [sig, {"encoding": "json", "maxSupportedTransactionVersion": 0, "commitment": "confirmed"}],
                ),
                "getTransaction",
            )
            tx = balance_delta_transaction(
                sig,
                detail,
                watched,
                confirmations=_SOLANA_CONFIRMATIONS.get(info.get("confirmationStatus"), 0),
                block_time=info.get("blockTime"),
            )
            if tx is not None:
                txs.append(tx)
        return txs

    async def close(self) -> None:
        await self.rpc.close()


class EvmAdapter(ChainAdapter):
    """Ether transfers through web3; blocking calls run in the default executor."""

    chain = "ETH"

    def __init__(
        self,
        url: str,
        *,
        private_key: Optional[str] = None,
        payout_address: Optional[str] = None,
        scan_blocks: int = 50,
        retries: int = 3,
        backoff_s: float = 0.5,
        client: Optional[Web3] = None,
    ) -> None:
        super().__init__(payout_address=payout_address, retries=retries, backoff_s=backoff_s)
        self.client = client or Web3(Web3.HTTPProvider(url))
        self.scan_blocks = scan_blocks
        self._account = None
        if private_key:
            try:
                self._account = Account.from_key(private_key)
            except ValueError as exc:
                raise ConfigError("EVM_PRIVATE_KEY is not a valid key") from exc
        self.signer_address = self._account.address if self._account else None
        if not self.payout_address:
            self.payout_address = self.signer_address

    def own_addresses(self) -> Set[str]:
        return {a for a in (self.payout_address, self.signer_address) if a}

    async def _blocking(self, fn: Callable[[], T], what: str) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except (ConnectionError, TimeoutError, OSError) as exc:
            raise RpcTransient(f"{what}: {exc}") from exc
        except ValueError as exc:
            # web3 surfaces JSON-RPC error responses as ValueError subclasses
            raise RpcFatal(f"{what}: {exc}") from exc

    async def get_balance(self) -> Decimal:
        address = self.signer_address or self.payout_address
        if not address:
            raise RpcFatal("no EVM address configured")

        def _get_balance() -> Decimal:
            wei = self.client.eth.get_balance(Web3.to_checksum_address(address))
            return Decimal(wei) / Decimal(10**18)

        return await self._read(lambda: self._blocking(_get_balance, "eth_getBalance"), "get_balance")

    async def send_payment(self, address: str, amount: Decimal) -> SendResult:
        account = self._account
        if account is None:
            raise RpcFatal("no EVM signer configured")
        client = self.client
        to_checksum = Web3.to_checksum_address(address)
        value = int(quantize(amount, "ETH") * Decimal(10**18))

        def _send() -> str:
            tx = {
                "to": to_checksum,
                "value": value,
                "gas": 21000,
                "gasPrice": client.eth.gas_price,
                "nonce": client.eth.get_transaction_count(account.address),
                "chainId": client.eth.chain_id,
            }
            signed = account.sign_transaction(tx)
            return client.eth.send_raw_transaction(signed.raw_transaction).hex()

        tx_hash = await self._blocking(_send, "eth_sendRawTransaction")
        log.info("ETH broadcast %s to %s: %s", amount, address, tx_hash)
        return SendResult(tx_id=tx_hash)

    async def get_recent_transactions(self, limit: int = 25) -> List[ChainTransaction]:
        watched = (self.payout_address or "").lower()
        if not watched:
            return []
        client = self.client
        scan_blocks = self.scan_blocks

        def _scan() -> List[ChainTransaction]:
            latest = client.eth.block_number
            found: List[ChainTransaction] = []
            for number in range(latest, max(-1, latest - scan_blocks), -1):
                block = client.eth.get_block(number, full_transactions=True)
                for tx in block["transactions"]:
                    if not tx.get("to") or tx["to"].lower() != watched or not tx["value"]:
                        continue
                    found.append(
                        ChainTransaction(
                            tx_id=tx["hash"].hex(),
                            amount=Decimal(tx["value"]) / Decimal(10**18),
                            confirmations=latest - number + 1,
                            timestamp=float(block["timestamp"]),
                            direction=INBOUND,
                        )
                    )
                    if len(found) >= limit:
                        return found
            return found

        return await self._read(lambda: self._blocking(_scan, "block scan"), "get_recent_transactions")


class SimulatedAdapter(ChainAdapter):
    """Reads from a real adapter when one exists; never broadcasts."""

    def __init__(self, chain: str, inner: Optional[ChainAdapter] = None, *, balance: Decimal = Decimal("1000")) -> None:
        super().__init__(payout_address=inner.payout_address if inner else None)
        self.chain = chain.upper()
        self.inner = inner
        self.balance = balance
        self.sent: List[tuple] = []

    async def get_balance(self) -> Decimal:
        if self.inner is not None:
            return await self.inner.get_balance()
        return self.balance

    async def send_payment(self, address: str, amount: Decimal) -> SendResult:
        tx_id = f"simulated_tx_{secrets.token_hex(8)}"
        self.sent.append((address, amount, tx_id, time.time()))
        log.info("[simulation] %s payment of %s to %s -> %s", self.chain, amount, address, tx_id)
        return SendResult(tx_id=tx_id)

    async def get_recent_transactions(self, limit: int = 25) -> List[ChainTransaction]:
        if self.inner is not None:
            return await self.inner.get_recent_transactions(limit)
        return []

    async def get_payout_address(self) -> Optional[str]:
        if self.inner is not None:
            return await self.inner.get_payout_address()
        return self.payout_address

    def own_addresses(self) -> Set[str]:
        return self.inner.own_addresses() if self.inner is not None else super().own_addresses()

    async def close(self) -> None:
        if self.inner is not None:
            await self.inner.close()


def build_adapters(settings: Settings) -> Dict[str, ChainAdapter]:
    rpc = settings.rpc
    common = {"retries": rpc.retries, "backoff_s": rpc.backoff_s}
    adapters: Dict[str, ChainAdapter] = {}
    if rpc.ltc_url:
        adapters["LTC"] = CoreRpcAdapter(
            "LTC",
            rpc.ltc_url,
            user=rpc.ltc_user,
            password=rpc.ltc_password,
            payout_address=settings.payout_addresses.get("LTC"),
            timeout_s=rpc.timeout_s,
            **common,
        )
    if rpc.btc_url:
        adapters["BTC"] = CoreRpcAdapter(
            "BTC",
            rpc.btc_url,
            user=rpc.btc_user,
            password=rpc.btc_password,
            payout_address=settings.payout_addresses.get("BTC"),
            timeout_s=rpc.timeout_s,
            **common,
        )
    if rpc.sol_url:
        adapters["SOL"] = SolanaAdapter(
            rpc.sol_url,
            private_key=rpc.sol_private_key,
            payout_address=settings.payout_addresses.get("SOL"),
            timeout_s=rpc.timeout_s,
            **common,
        )
    if rpc.eth_url:
        adapters["ETH"] = EvmAdapter(
            rpc.eth_url,
            private_key=rpc.evm_private_key,
            payout_address=settings.payout_addresses.get("ETH"),
            scan_blocks=rpc.evm_scan_blocks,
            **common,
        )

    if settings.simulation_mode:
        wrapped: Dict[str, ChainAdapter] = {}
        for chain in set(adapters) | {settings.chain}:
            sim = SimulatedAdapter(chain, adapters.get(chain))
            if sim.inner is None:
                sim.payout_address = settings.payout_addresses.get(chain)
            wrapped[chain] = sim
        log.warning("simulation mode on: payments will not be broadcast")
        return wrapped

    if settings.chain not in adapters:
        raise ConfigError(f"no RPC endpoint configured for {settings.chain}")
    log.info("chain adapters ready: %s", ", ".join(sorted(adapters)))
    return adapters
