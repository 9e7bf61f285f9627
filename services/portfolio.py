"""
Portfolio Manager

Periodically pulls account holdings from every enabled adapter that reports
them and stores them in the holdings registry. Balances can be read per
venue or collated by currency across all venues.
"""

from typing import Dict, Optional

from core.config import PortfolioConfig
from core.exchange_manager import ExchangeManager
from services.market_data import HoldingsRegistry
from services.subsystem import PeriodicSubsystem


class PortfolioManager(PeriodicSubsystem):
    """Holdings poller, managed as the `portfolio` subsystem."""

    name = "portfolio"
    tick_on_start = True

    def __init__(
        self,
        exchanges: ExchangeManager,
        holdings: HoldingsRegistry,
        config: Optional[PortfolioConfig] = None,
    ) -> None:
        config = config or PortfolioConfig()
        super().__init__(interval=config.sync_interval)
        self.exchanges = exchanges
        self.holdings = holdings

    async def _tick(self) -> None:
        await self.update_holdings()

    async def update_holdings(self) -> int:
        """
        Fetch holdings from every adapter with the `account_info` flag.

        Returns:
            Number of venues updated
        """
        updated = 0
        for exchange in self.exchanges.get_exchanges_with_feature("account_info"):
            try:
                holdings = await exchange.fetch_account_info()
                await self.holdings.process(holdings)
                updated += 1
            except Exception as e:
                self.logger.error(f"Failed to update holdings for {exchange.get_name()}: {e}")
        return updated

    def collated(self) -> Dict[str, Dict[str, float]]:
        """
        Sum balances by currency across venues and sub-accounts.

        Example:
            >>> manager.collated()
            {'BTC': {'total': 1.5, 'hold': 0.2}, 'USDT': {'total': 1000.0, 'hold': 0.0}}
        """
        totals: Dict[str, Dict[str, float]] = {}
        for holdings in self.holdings.list():
            for account in holdings.accounts:
                for balance in account.currencies:
                    entry = totals.setdefault(balance.currency, {"total": 0.0, "hold": 0.0})
                    entry["total"] += balance.total
                    entry["hold"] += balance.hold
        return totals
