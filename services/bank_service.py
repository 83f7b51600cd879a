"""
Bank Service - Nigerian bank codes and account number checks for disbursements
"""

import logging
import re
from typing import Dict, List, Optional

from services.payment_gateway import BasePaymentGateway, GatewayRequestError

logger = logging.getLogger(__name__)

# Nigerian bank codes (Paystack / NIBSS format)
NIGERIAN_BANK_CODES: Dict[str, str] = {
    "Access Bank": "044",
    "Citibank Nigeria": "023",
    "Diamond Bank": "063",
    "Ecobank Nigeria": "050",
    "Fidelity Bank": "070",
    "First Bank of Nigeria": "011",
    "First City Monument Bank": "214",
    "Guaranty Trust Bank": "058",
    "Heritage Bank": "030",
    "Keystone Bank": "082",
    "Kuda Bank": "50211",
    "Opay": "100022",
    "PalmPay": "999991",
    "Polaris Bank": "076",
    "Providus Bank": "101",
    "Stanbic IBTC Bank": "221",
    "Standard Chartered Bank": "068",
    "Sterling Bank": "232",
    "Suntrust Bank": "100",
    "Union Bank of Nigeria": "032",
    "United Bank for Africa": "033",
    "Unity Bank": "215",
    "VFD Microfinance Bank": "566",
    "Wema Bank": "035",
    "Zenith Bank": "057",
}

VALID_BANK_CODES = frozenset(NIGERIAN_BANK_CODES.values())

NUBAN_LENGTH = 10


def _digits(value) -> str:
    return re.sub(r"\D", "", str(value or ""))


class BankService:
    """Bank lookups; the gateway list is preferred and the static table is the fallback"""

    def __init__(self, gateway: Optional[BasePaymentGateway] = None):
        self.gateway = gateway

    @staticmethod
    def format_account_number(account_number) -> str:
        """Strip everything but digits"""
        return _digits(account_number)

    @staticmethod
    def validate_account_number(account_number) -> bool:
        """NUBAN account numbers are exactly 10 digits"""
        return len(_digits(account_number)) == NUBAN_LENGTH

    @staticmethod
    def get_bank_name(bank_code) -> Optional[str]:
        clean_code = _digits(bank_code)
        for name, code in NIGERIAN_BANK_CODES.items():
            if code == clean_code:
                return name
        return None

    @staticmethod
    def resolve_bank_code(bank_name: Optional[str]) -> Optional[str]:
        """Bank name to code, case-insensitive; None when unknown"""
        if not bank_name:
            return None
        wanted = bank_name.strip().lower()
        for name, code in NIGERIAN_BANK_CODES.items():
            if name.lower() == wanted:
                return code
        return None

    async def get_supported_banks(self) -> List[Dict[str, str]]:
        """Banks from the gateway, or the static table when the gateway is unavailable"""
        if self.gateway is not None:
            try:
                banks = await self.gateway.list_banks()
                if banks:
                    logger.info(f"✅ Fetched {len(banks)} banks from {self.gateway.provider_name}")
                    return banks
            except GatewayRequestError as e:
                logger.warning(f"⚠️ BANK_LIST_UNAVAILABLE: {e} - falling back to static bank list")

        return [{"name": name, "code": code} for name, code in NIGERIAN_BANK_CODES.items()]

    async def find_bank_code(self, bank_name: Optional[str]) -> Optional[str]:
        """Resolve a bank name: exact static match first, then a loose match on the supported list"""
        code = self.resolve_bank_code(bank_name)
        if code or not bank_name:
            return code

        wanted = bank_name.strip().lower()
        for bank in await self.get_supported_banks():
            name = (bank.get("name") or "").lower()
            if name and (wanted in name or name in wanted):
                logger.info(f"✅ Resolved bank code: {bank_name} -> {bank['code']}")
                return bank["code"]
        return None

    async def validate_bank_code(self, bank_code) -> bool:
        clean_code = _digits(bank_code)
        if not clean_code:
            return False
        if clean_code in VALID_BANK_CODES:
            return True
        banks = await self.get_supported_banks()
        return any(bank["code"] == clean_code for bank in banks)
