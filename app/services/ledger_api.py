# app/services/ledger_api.py
import requests
from requests.exceptions import RequestException
import logging
from typing import List, Dict, Any, Optional, Union
from urllib.parse import urljoin

from app.core.config import settings
from app.x402.ledger import find_by_tx_hash, find_matching_record, parse_records
from app.x402.errors import LedgerResponseError
from app.x402.models import LedgerRecord

logger = logging.getLogger(__name__)


def _extract_items(data: Any) -> List[Dict[str, Any]]:
    """Accept either a bare list or an {"items": [...]} envelope."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        items = data.get("items", data.get("records"))
        if isinstance(items, list):
            return items
        logger.warning(f"Ledger API response has no record list: {list(data.keys())}")
        return []
    logger.warning(f"Unexpected data structure from ledger API: {type(data)}")
    return []


class RemoteLedgerClient:
    """
    Ledger backed by an external transfer indexer.

    The indexer exposes GET /records (optionally filtered by txHash) and
    POST /records. Lookups are matched locally with the same rules as the
    file-backed ledger.

    Args:
        base_url: Indexer base URL. If None, uses X402_LEDGER_API_URL.
        timeout: Per-request timeout in seconds. If None, uses config.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[int] = None):
        self._base_url = base_url
        self._timeout = timeout

    @property
    def base_url(self) -> str:
        url = self._base_url or settings.X402_LEDGER_API_URL
        if not url:
            raise ValueError("X402_LEDGER_API_URL is not configured")
        url = str(url)
        return url if url.endswith("/") else url + "/"

    @property
    def timeout(self) -> int:
        return self._timeout if self._timeout is not None else settings.X402_LEDGER_API_TIMEOUT

    def _get_records(self, params: Optional[Dict[str, Any]] = None) -> List[LedgerRecord]:
        api_url = urljoin(self.base_url, "records")
        try:
            response = requests.get(api_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return parse_records(_extract_items(response.json()))
        except RequestException as e:
            logger.error(f"Error fetching ledger records ({api_url}): {e}")
            raise # Let the endpoint handle it with a 502
        except ValueError as e:
            logger.error(f"Error parsing ledger API response: {e}")
            raise LedgerResponseError(f"Could not parse ledger API response: {e}") from e

    def list(self, limit: Optional[int] = None) -> List[LedgerRecord]:
        params = {"limit": limit} if limit is not None else None
        records = self._get_records(params)
        return records[:limit] if limit is not None else records

    def find_transfer(self, tx_hash: str, token: str, recipient: str, amount: str) -> Optional[LedgerRecord]:
        """
        Look up the record proving this payment.

        Raises:
            RequestException: If the indexer cannot be reached
            LedgerResponseError: If the indexer answers with something unparsable
        """
        records = self._get_records({"txHash": tx_hash})
        return find_matching_record(records, tx_hash, token, recipient, amount)

    def get_by_tx_hash(self, tx_hash: str) -> Optional[LedgerRecord]:
        return find_by_tx_hash(self._get_records({"txHash": tx_hash}), tx_hash)

    def append(self, record: Union[LedgerRecord, Dict[str, Any]]) -> LedgerRecord:
        """Forward a confirmed transfer to the indexer."""
        if not isinstance(record, LedgerRecord):
            record = LedgerRecord.model_validate(record)
        api_url = urljoin(self.base_url, "records")
        try:
            response = requests.post(api_url, json=record.model_dump(mode="json"), timeout=self.timeout)
            response.raise_for_status()
            logger.info(f"Ledger record forwarded: {record.txHash}")
            return record
        except RequestException as e:
            logger.error(f"Error posting ledger record ({api_url}): {e}")
            raise
