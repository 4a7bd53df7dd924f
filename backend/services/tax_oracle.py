"""
Tax Oracle

The last resort for tax attribution: when the subset-sum tiers cannot
explain a receipt's tax, a model is asked which items look taxable.

  - TaxOracle        — the capability the attribution engine depends on
  - ClaudeTaxOracle  — asks Claude in a single batched request
  - CachedTaxOracle  — checks the oracle_cache table first (zero API cost)
                       and stores fresh answers for next time (empty
                       answers are never stored, so they get retried)

Every failure surfaces as OracleError; the engine decides what to do
with it.  Answers are suggestions only — they are merged against the
receipt's own rate list, never trusted as-is.
"""
import hashlib
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import aiosqlite
import anthropic
from pydantic import ValidationError

from models.schemas import LineItem, OracleResult, ReceiptContext, TaxRate

logger = logging.getLogger("apportion.oracle")
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
ORACLE_MODEL = os.environ.get("ORACLE_MODEL", "claude-haiku-4-5")


class OracleError(Exception):
    """Raised when the oracle cannot produce an answer (network, auth, parse error)."""
    pass


class TaxOracle(ABC):

    @abstractmethod
    async def classify(
        self,
        items: Sequence[LineItem],
        rates: Sequence[TaxRate],
        context: Optional[ReceiptContext] = None,
    ) -> OracleResult:
        """Return the tax ids that apply to each item, plus any rates it had to invent."""
        raise NotImplementedError


SYSTEM_PROMPT = """You are a sales-tax auditor reading a shopping receipt.
Decide which line items were charged sales tax.

Rules:
- Use the store location (when given) and the item names to judge taxability.
- Prefer the tax rate ids listed in "rates". Only invent a new rate when the
  receipt clearly charged a tax that is not listed; give it a short id, a
  description and its rate as a decimal fraction if you know it, else null.
- An item may carry several tax ids, or none.
- Return ONLY a JSON object. No prose, no markdown fences.

Input format: JSON object with "items" (id, name, price), "rates"
(id, name, rate or null), optional "store_name" and "store_location".
Output format:
{"items": [{"id": "...", "tax_ids": ["..."]}],
 "new_rates": [{"id": "...", "description": "...", "rate": number or null}]}
"""


def _oracle_payload(
    items: Sequence[LineItem],
    rates: Sequence[TaxRate],
    context: Optional[ReceiptContext],
) -> dict:
    payload = {
        "items": [
            {"id": i.id, "name": i.name,
             "price": float(i.price.to_decimal()) if i.price is not None else None}
            for i in items
        ],
        "rates": [
            {"id": r.id, "name": r.name,
             "rate": float(r.rate) if r.rate is not None else None}
            for r in rates if r.enabled
        ],
    }
    if context is not None:
        if context.store_name:
            payload["store_name"] = context.store_name
        if context.store_location:
            payload["store_location"] = context.store_location
    return payload


def parse_oracle_response(data) -> OracleResult:
    """Turn the model's JSON into an OracleResult, rejecting anything malformed."""
    if not isinstance(data, dict) or not isinstance(data.get("items"), list):
        raise OracleError("oracle response must be an object with an 'items' list")

    assignments: dict[str, list[str]] = {}
    for entry in data["items"]:
        if not isinstance(entry, dict) or "id" not in entry:
            raise OracleError(f"malformed oracle item entry: {entry!r}")
        tax_ids = entry.get("tax_ids") or []
        if not isinstance(tax_ids, list):
            raise OracleError(f"tax_ids must be a list for item {entry['id']!r}")
        assignments[str(entry["id"])] = [str(t) for t in tax_ids]

    try:
        return OracleResult(
            assignments=assignments,
            new_rates=data.get("new_rates") or [],
        )
    except ValidationError as e:
        raise OracleError(f"malformed new_rates: {e}") from e


class ClaudeTaxOracle(TaxOracle):
    """Asks Claude which items were taxed."""

    def __init__(self, api_key: Optional[str] = None, model: str = ORACLE_MODEL,
                 client: Optional[anthropic.AsyncAnthropic] = None):
        self.api_key = api_key if api_key is not None else ANTHROPIC_API_KEY
        self.model = model
        self._client = client

    async def classify(self, items, rates, context=None) -> OracleResult:
        if not self.api_key and self._client is None:
            logger.warning("ANTHROPIC_API_KEY not set — skipping tax oracle")
            raise OracleError("ANTHROPIC_API_KEY not set")

        client = self._client or anthropic.AsyncAnthropic(api_key=self.api_key)
        payload = _oracle_payload(items, rates, context)
        try:
            message = await client.messages.create(
                model=self.model,
                max_tokens=1024,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": json.dumps(payload)}],
            )
            raw = message.content[0].text.strip()
            raw = re.sub(r'^```[a-z]*\n?', '', raw)
            raw = re.sub(r'\n?```$', '', raw)
            data = json.loads(raw)
        except Exception as e:
            logger.error("Claude API error: %s", e)
            raise OracleError(str(e)) from e

        return parse_oracle_response(data)


def oracle_cache_key(
    items: Sequence[LineItem],
    rates: Sequence[TaxRate],
    context: Optional[ReceiptContext] = None,
) -> str:
    """Stable fingerprint of everything the oracle gets to see."""
    payload = _oracle_payload(items, rates, context)
    blob = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


def worth_caching(result: OracleResult, items: Sequence[LineItem]) -> bool:
    """True if at least one of the receipt's items came back with a tax id."""
    item_ids = {i.id for i in items}
    return any(tax_ids and item_id in item_ids
               for item_id, tax_ids in result.assignments.items())


async def load_cached_result(db: aiosqlite.Connection, key: str) -> Optional[OracleResult]:
    async with db.execute(
        "SELECT response FROM oracle_cache WHERE cache_key = ?", (key,)
    ) as cur:
        row = await cur.fetchone()
    if not row:
        return None
    try:
        return OracleResult.model_validate_json(row["response"])
    except ValidationError as e:
        logger.warning("Discarding unreadable oracle cache entry %s: %s", key[:12], e)
        return None


async def save_cached_result(db: aiosqlite.Connection, key: str, result: OracleResult,
                             model: str = ""):
    await db.execute(
        """
        INSERT INTO oracle_cache (cache_key, response, model, hits)
        VALUES (?, ?, ?, 0)
        ON CONFLICT(cache_key) DO UPDATE SET
            response   = excluded.response,
            model      = excluded.model,
            created_at = datetime('now')
        """,
        (key, result.model_dump_json(), model),
    )


class CachedTaxOracle(TaxOracle):
    """Wraps another oracle with the SQLite answer cache."""

    def __init__(self, inner: TaxOracle, db: aiosqlite.Connection):
        self.inner = inner
        self.db = db

    async def classify(self, items, rates, context=None) -> OracleResult:
        key = oracle_cache_key(items, rates, context)
        cached = await load_cached_result(self.db, key)
        if cached is not None:
            logger.debug("Oracle cache hit %s", key[:12])
            await self.db.execute(
                "UPDATE oracle_cache SET hits = hits + 1 WHERE cache_key = ?", (key,)
            )
            await self.db.commit()
            return cached

        result = await self.inner.classify(items, rates, context)
        if not worth_caching(result, items):
            logger.info("Oracle answer assigns no taxes — not caching %s", key[:12])
            return result
        await save_cached_result(self.db, key, result, getattr(self.inner, "model", ""))
        await self.db.commit()
        return result
