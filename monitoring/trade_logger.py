"""
Trade Audit Log — structured JSONL record of every rejected or corrected trade.

Complements the sqlite ledger: the ledger holds what happened, this file
holds what was refused (and why) plus PnL corrections.
"""
import json
import time
from collections import Counter
from pathlib import Path
from loguru import logger


class TradeAuditLog:
    def __init__(self, path: str = 'data/trade_audit.jsonl'):
        self.path = Path(path)

    def record(self, event: str, symbol: str = '', reason: str = '', **context):
        """Append one audit event. Never raises."""
        record = {'event': event, 'symbol': symbol, 'reason': reason,
                  **context, '_logged_at': time.time()}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'a') as f:
                f.write(json.dumps(record, default=str) + '\n')
        except OSError as e:
            logger.warning(f'[LOGGER] Could not write audit record: {e}')

    def load_recent(self, n: int = 200) -> list[dict]:
        """Load last N audit records."""
        if not self.path.exists():
            return []
        records = []
        with open(self.path) as f:
            for line in f:
                line = line.strip()
                if line:
                    records.append(json.loads(line))
        return records[-n:]


def count_by_reason(records: list[dict]) -> dict:
    """Rejection counts grouped by reason, most frequent first."""
    counts = Counter(r.get('reason', 'NA') for r in records if r.get('event') == 'rejected')
    return dict(counts.most_common())
