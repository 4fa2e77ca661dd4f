"""
Decision Generator interface — the external decision-maker behind the engine.

The engine hands over a snapshot (market, account, positions, recent trades,
prior decision) and receives a rationale plus zero or more intents:
  OpenIntent(symbol, side, leverage, amount)   amount = margin in USDT
  CloseIntent(symbol, percentage)

Intents are executed exactly as given or rejected by the executor's guards,
never rewritten. When a generator only returns prose, `parse_decision_text`
pulls intents out of it:
  "open BTC long at 10x leverage with 50 USDT"
  "BTC long: 50 USDT at 10x" | "BTC long 50 USDT 10x"
  "close BTC position" | "BTC close" | "exit BTC"
"""
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Union

import aiohttp
from loguru import logger


@dataclass(frozen=True)
class OpenIntent:
    symbol:        str
    side:          str
    leverage:      int
    amount:        float
    stop_loss:     Optional[float] = None
    profit_target: Optional[float] = None
    action:        str = 'open'


@dataclass(frozen=True)
class CloseIntent:
    symbol:     str
    percentage: float = 100.0
    action:     str = 'close'


Intent = Union[OpenIntent, CloseIntent]


@dataclass
class Decision:
    rationale: str = ''
    intents:   list = field(default_factory=list)


class DecisionGenerator(ABC):
    @abstractmethod
    async def decide(self, snapshot: dict) -> Decision: ...

    async def close(self):
        pass


class HoldDecisionGenerator(DecisionGenerator):
    """Never trades. Used when no decision endpoint is configured."""

    async def decide(self, snapshot: dict) -> Decision:
        return Decision(rationale='hold: no decision generator configured')


class HttpDecisionGenerator(DecisionGenerator):
    """
    POSTs the snapshot as JSON to `url` and expects
      {"rationale": str, "intents": [ {...}, ... ]}
    A response without structured intents falls back to text parsing of the rationale.
    """

    def __init__(self, url: str, symbols: list[str], api_key: str = '', timeout: float = 120.0):
        self.url = url
        self.symbols = symbols
        self.api_key = api_key
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def decide(self, snapshot: dict) -> Decision:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'

        async with self._session.post(self.url, data=json.dumps(snapshot, default=str),
                                      headers=headers) as resp:
            resp.raise_for_status()
            body = await resp.json(content_type=None)

        rationale = str(body.get('rationale', ''))
        raw_intents = body.get('intents')
        if raw_intents:
            intents = parse_intents(raw_intents)
        else:
            intents = parse_decision_text(rationale, self.symbols)
        logger.info(f'[DECISION] {len(intents)} intents received')
        return Decision(rationale=rationale, intents=intents)

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()


def parse_intents(raw: list[dict]) -> list[Intent]:
    """Structured intents → typed intents. Malformed entries are dropped with a warning."""
    intents: list[Intent] = []
    for item in raw:
        try:
            action = item['action']
            symbol = str(item['symbol']).upper()
            if action == 'open':
                intents.append(OpenIntent(
                    symbol=symbol,
                    side=str(item['side']).lower(),
                    leverage=item['leverage'],
                    amount=item.get('amount', item.get('amount_quote')),
                    stop_loss=item.get('stop_loss'),
                    profit_target=item.get('profit_target'),
                ))
            elif action == 'close':
                intents.append(CloseIntent(symbol=symbol, percentage=item.get('percentage', 100.0)))
            else:
                logger.warning(f'[DECISION] Unknown intent action {action!r} — dropped')
        except (KeyError, TypeError) as e:
            logger.warning(f'[DECISION] Malformed intent {item!r}: {e}')
    return intents


def _open_patterns(sym: str) -> list[tuple[re.Pattern, str]]:
    # (pattern, group order); 'la' = leverage then amount
    return [
        (re.compile(rf'open\s+{sym}\s+(long|short)\s+(?:at\s+)?(\d+)x?\s+leverage\s+(?:with\s+)?(\d+(?:\.\d+)?)\s+usdt', re.I), 'la'),
        (re.compile(rf'{sym}\s+(long|short):\s+(\d+(?:\.\d+)?)\s+usdt\s+at\s+(\d+)x', re.I), 'al'),
        (re.compile(rf'execute\s+{sym}\s+(long|short).*?amount\s+(\d+(?:\.\d+)?)\s+usdt.*?leverage\s+(\d+)x', re.I), 'al'),
        (re.compile(rf'{sym}\s+(long|short)\s+(\d+(?:\.\d+)?)\s+usdt\s+(\d+)x', re.I), 'al'),
    ]


def _close_patterns(sym: str) -> list[re.Pattern]:
    return [
        re.compile(rf'close\s+{sym}\s+(?:long|short)?\s*position', re.I),
        re.compile(rf'\b{sym}\s+close', re.I),
        re.compile(rf'exit\s+{sym}\b', re.I),
    ]


def parse_decision_text(text: str, symbols: list[str]) -> list[Intent]:
    intents: list[Intent] = []
    for symbol in symbols:
        sym = re.escape(symbol.lower())
        for pattern, order in _open_patterns(sym):
            for m in pattern.finditer(text):
                if order == 'la':
                    leverage, amount = int(m.group(2)), float(m.group(3))
                else:
                    amount, leverage = float(m.group(2)), int(m.group(3))
                intents.append(OpenIntent(symbol=symbol.upper(), side=m.group(1).lower(),
                                          leverage=leverage, amount=amount))
                logger.info(f'[DECISION] Parsed OPEN {symbol} {m.group(1).lower()} {amount} USDT @ {leverage}x')

        if any(p.search(text) for p in _close_patterns(sym)):
            intents.append(CloseIntent(symbol=symbol.upper()))
            logger.info(f'[DECISION] Parsed CLOSE {symbol}')
    return intents
