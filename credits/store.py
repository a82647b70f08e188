"""
Credit Store — balance backends for the Credit Gate.

reserve() is the only way to spend credits and is a single conditional
decrement: it either takes `amount` from a balance that covers it or changes
nothing. There is no separate read-then-write path.

Implementations:
  - InMemoryCreditStore  (asyncio lock, single process)
  - RedisCreditStore     (Lua script, atomic across processes)
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import structlog

logger = structlog.get_logger()


class CreditStore(ABC):

    @abstractmethod
    async def reserve(self, user_id: str, credit_type: str, amount: int) -> tuple[bool, int]:
        """Atomically deduct `amount` if the balance covers it. Returns (ok, remaining)."""
        ...

    @abstractmethod
    async def refund(self, user_id: str, credit_type: str, amount: int) -> int:
        ...

    @abstractmethod
    async def get_balance(self, user_id: str, credit_type: str) -> int:
        ...

    @abstractmethod
    async def set_balance(self, user_id: str, credit_type: str, amount: int) -> None:
        """Allocation / monthly refill, owned by billing."""
        ...

    async def close(self) -> None:
        pass


class InMemoryCreditStore(CreditStore):

    def __init__(self, initial: dict[str, int] = None):
        self._balances: dict[tuple[str, str], int] = {}
        self._defaults = dict(initial or {})
        self._lock = asyncio.Lock()

    def _current(self, user_id: str, credit_type: str) -> int:
        return self._balances.get((user_id, credit_type), self._defaults.get(credit_type, 0))

    async def reserve(self, user_id: str, credit_type: str, amount: int) -> tuple[bool, int]:
        async with self._lock:
            balance = self._current(user_id, credit_type)
            if balance < amount:
                return False, balance
            self._balances[(user_id, credit_type)] = balance - amount
            return True, balance - amount

    async def refund(self, user_id: str, credit_type: str, amount: int) -> int:
        async with self._lock:
            balance = self._current(user_id, credit_type) + amount
            self._balances[(user_id, credit_type)] = balance
            return balance

    async def get_balance(self, user_id: str, credit_type: str) -> int:
        return self._current(user_id, credit_type)

    async def set_balance(self, user_id: str, credit_type: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("Credit balance cannot be negative")
        async with self._lock:
            self._balances[(user_id, credit_type)] = amount


# KEYS[1] = balance key, ARGV[1] = amount, ARGV[2] = default balance
_RESERVE_SCRIPT = """
local balance = redis.call('GET', KEYS[1])
if not balance then
  balance = tonumber(ARGV[2])
  redis.call('SET', KEYS[1], balance)
else
  balance = tonumber(balance)
end
local amount = tonumber(ARGV[1])
if balance < amount then
  return {0, balance}
end
local remaining = redis.call('DECRBY', KEYS[1], amount)
return {1, remaining}
"""


class RedisCreditStore(CreditStore):

    def __init__(self, redis_url: str = "redis://localhost:6379", prefix: str = "credits",
                 initial: dict[str, int] = None):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(redis_url, decode_responses=True)
        self._prefix = prefix
        self._defaults = dict(initial or {})
        self._reserve = self._redis.register_script(_RESERVE_SCRIPT)

    def _key(self, user_id: str, credit_type: str) -> str:
        return f"{self._prefix}:{user_id}:{credit_type}"

    async def reserve(self, user_id: str, credit_type: str, amount: int) -> tuple[bool, int]:
        ok, remaining = await self._reserve(
            keys=[self._key(user_id, credit_type)],
            args=[amount, self._defaults.get(credit_type, 0)],
        )
        return bool(int(ok)), int(remaining)

    async def refund(self, user_id: str, credit_type: str, amount: int) -> int:
        return int(await self._redis.incrby(self._key(user_id, credit_type), amount))

    async def get_balance(self, user_id: str, credit_type: str) -> int:
        value: Any = await self._redis.get(self._key(user_id, credit_type))
        return int(value) if value is not None else self._defaults.get(credit_type, 0)

    async def set_balance(self, user_id: str, credit_type: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("Credit balance cannot be negative")
        await self._redis.set(self._key(user_id, credit_type), amount)

    async def close(self) -> None:
        await self._redis.aclose()


def create_credit_store(config: dict[str, Any] = None) -> CreditStore:
    config = config or {}
    backend = config.get("backend", "memory")
    initial = config.get("initial_balances", {})
    if backend == "redis":
        store = RedisCreditStore(config.get("redis_url", "redis://localhost:6379"), initial=initial)
    else:
        store = InMemoryCreditStore(initial=initial)
    logger.info("credit_store_created", backend=backend)
    return store
