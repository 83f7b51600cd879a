"""
Cache Invalidation System
Keeps the loan read cache consistent after ledger status changes
"""

import logging
from typing import Optional

from caching.simple_cache import SimpleCache, loan_cache_key, borrower_loans_cache_key

logger = logging.getLogger(__name__)


class CacheInvalidator:
    """
    Best-effort invalidation of loan and borrower cache entries.

    Failures are logged and swallowed: the database is the source of truth and
    a stale cache entry simply expires with its TTL.
    """

    def __init__(self, cache: SimpleCache):
        self.cache = cache

    def invalidate_loan(self, loan_id: str, borrower_id: Optional[str] = None, reason: str = "loan_status_change"):
        """Drop the cached loan detail and the borrower's loan list"""
        try:
            self.cache.delete(loan_cache_key(loan_id))
            if borrower_id:
                self.cache.delete_prefix(borrower_loans_cache_key(borrower_id))
            logger.debug(f"Cache invalidated for loan {loan_id}: {reason}")
        except Exception as e:
            logger.warning(f"⚠️ CACHE_INVALIDATION_FAILED: loan {loan_id} ({reason}): {e}")

    def invalidate_on_repayment(self, loan_id: str, borrower_id: Optional[str] = None, transaction_reference: str = ""):
        self.invalidate_loan(loan_id, borrower_id, f"repayment_{transaction_reference}")

    def invalidate_on_disbursement(self, loan_id: str, borrower_id: Optional[str] = None, disbursement_reference: str = ""):
        self.invalidate_loan(loan_id, borrower_id, f"disbursement_{disbursement_reference}")
