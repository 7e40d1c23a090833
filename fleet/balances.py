"""
Balances - Read-only funding checks for validator addresses.

Address formats and the chain API used for each:
    0x...   C-chain   eth_getBalance      /ext/bc/C/rpc
    X-...   X-chain   avm.getBalance      /ext/bc/X
    P-...   P-chain   platform.getBalance /ext/bc/P

An address is flagged when its balance is strictly below the minimum.
Addresses that cannot be queried are reported with an error, not flagged.
"""

import logging
from typing import Iterable

from core.services import ServiceClient, ServiceError
from fleet.types import BalanceEntry, BalanceReport, utcnow_iso

logger = logging.getLogger("fleet.balances")

DEFAULT_ASSET = "AVAX"


class BalanceChecker:
    def __init__(self, client: ServiceClient, asset_id: str = DEFAULT_ASSET):
        self.client = client
        self.asset_id = asset_id

    def balance_of(self, address: str) -> int:
        """
        Current balance in the chain's smallest unit.

        Raises:
            ValueError: Unrecognized address format or malformed result
            ServiceError: RPC failure
        """
        if address.startswith("0x"):
            result = self.client.call_rpc("/ext/bc/C/rpc", "eth_getBalance", [address, "latest"])
            return int(result, 16)
        if address.startswith("X-"):
            result = self.client.call_rpc(
                "/ext/bc/X", "avm.getBalance", {"address": address, "assetID": self.asset_id}
            )
            return int(result["balance"])
        if address.startswith("P-"):
            result = self.client.call_rpc("/ext/bc/P", "platform.getBalance", {"addresses": [address]})
            return int(result["balance"])
        raise ValueError(f"unrecognized address format: {address}")

    def check(self, addresses: Iterable[str], minimum: int) -> BalanceReport:
        report = BalanceReport(minimum=minimum, timestamp=utcnow_iso())
        for address in addresses:
            try:
                balance = self.balance_of(address)
            except (ServiceError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Balance query failed for {address}: {e}")
                report.entries.append(BalanceEntry(address, None, False, error=str(e)))
                continue

            below = balance < minimum
            if below:
                logger.warning(f"{address} balance {balance} is below minimum {minimum}")
            report.entries.append(BalanceEntry(address, balance, below))
        return report
