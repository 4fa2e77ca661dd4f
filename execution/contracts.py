"""
Contract Book — cached contract specs per symbol (multiplier, lot step, size limits).

Specs rarely change, so each symbol is fetched once per process. A spec with
an unusable multiplier is never cached and never defaulted.
"""
from decimal import Decimal, ROUND_DOWN
from loguru import logger

from execution.errors import DataQualityError
from execution.fee_model import require_multiplier
from execution.venue_client import ContractInfo, VenueClient


class ContractBook:
    def __init__(self, venue: VenueClient):
        self.venue = venue
        self._cache: dict[str, ContractInfo] = {}

    async def get(self, symbol: str) -> ContractInfo:
        info = self._cache.get(symbol)
        if info is None:
            info = await self.venue.get_contract_info(symbol)
            require_multiplier(symbol, info.multiplier)
            self._cache[symbol] = info
            logger.debug(f'[EXEC] Contract {symbol}: multiplier {info.multiplier}, '
                         f'min {info.order_size_min}, max {info.order_size_max}')
        return info

    async def multiplier(self, symbol: str) -> float:
        return (await self.get(symbol)).multiplier


def floor_to_step(quantity: float, step: float) -> float:
    """Round a contract quantity down to the venue's lot step."""
    if step <= 0:
        raise DataQualityError('invalid_lot_step', step=step)
    q = Decimal(str(quantity))
    s = Decimal(str(step))
    return float((q / s).to_integral_value(rounding=ROUND_DOWN) * s)
