import pytest

from core.config import Settings
from execution.order_utils import ExchangeUnavailableError, InsufficientFundsError, OrderFatalError
from execution.paper_exchange import PAPER_BALANCES_FILE, PaperExchange

PAIR = "XRP-USDC"


class FakeMarketData:
    def __init__(self, candles):
        self.candles = candles
        self.calls = 0

    async def get_candles(self, pair, granularity_s, start, end):
        self.calls += 1
        return list(self.candles)

    async def get_price(self, pair):
        return 0.42


@pytest.fixture
def exchange(config):
    ex = PaperExchange(config)
    ex.set_price(0.5)
    return ex


@pytest.mark.asyncio
async def test_buy_charges_taker_fee(exchange):
    result = await exchange.submit_order(PAIR, "BUY", 100.0)
    assert result.success
    assert result.order_id.startswith("paper-")
    assert result.fill_price == 0.5
    assert result.fees == pytest.approx(0.6)
    balances = await exchange.get_balances()
    assert balances["USDC"] == pytest.approx(1000.0 - 50.0 - 0.6)
    assert balances["XRP"] == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_buy_beyond_balance_is_rejected(exchange):
    with pytest.raises(InsufficientFundsError):
        await exchange.submit_order(PAIR, "BUY", 5000.0)
    assert exchange.orders == []


@pytest.mark.asyncio
async def test_sell_without_holdings(config):
    strict = PaperExchange(config, allow_short=False)
    strict.set_price(0.5)
    with pytest.raises(InsufficientFundsError):
        await strict.submit_order(PAIR, "SELL", 10.0)

    margin = PaperExchange(config)
    margin.set_price(0.5)
    await margin.submit_order(PAIR, "SELL", 10.0)
    assert margin.balances["XRP"] == pytest.approx(-10.0)
    assert (await margin.get_balances())["XRP"] == 0.0


@pytest.mark.asyncio
async def test_post_only_limit_uses_maker_fee(exchange):
    exchange.set_balance("XRP", 100.0)
    result = await exchange.submit_order(PAIR, "SELL", 100.0, order_type="limit", price=0.55, post_only=True)
    assert result.fill_price == 0.55
    assert result.fees == pytest.approx(55.0 * 0.006)


@pytest.mark.asyncio
async def test_simulated_rejection(exchange):
    exchange.fail_next_orders = 1
    assert not (await exchange.submit_order(PAIR, "BUY", 10.0)).success
    assert (await exchange.submit_order(PAIR, "BUY", 10.0)).success


@pytest.mark.asyncio
async def test_invalid_arguments(exchange):
    with pytest.raises(OrderFatalError):
        await exchange.submit_order(PAIR, "BUY", -1.0)


@pytest.mark.asyncio
async def test_balances_persist(config, tmp_path):
    first = PaperExchange(config, data_dir=tmp_path)
    first.set_price(0.5)
    await first.submit_order(PAIR, "BUY", 100.0)
    assert (tmp_path / PAPER_BALANCES_FILE).exists()

    second = PaperExchange(config, data_dir=tmp_path)
    assert second.balances["XRP"] == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_injected_candles_are_windowed(config, candle_factory):
    candles = candle_factory([1.0, 1.1, 1.2, 1.3])
    ex = PaperExchange(config)
    ex.set_candles(list(reversed(candles)))
    window = await ex.get_candles(PAIR, 60, candles[1].start, candles[2].start)
    assert [c.close for c in window] == [1.1, 1.2]
    assert await ex.get_price(PAIR) == 1.3


@pytest.mark.asyncio
async def test_market_data_fallback(config, candle_factory):
    market = FakeMarketData(candle_factory([0.4, 0.41]))
    ex = PaperExchange(config, market_data=market)
    assert len(await ex.get_candles(PAIR, 60, 0, 10**10)) == 2
    # Price follows the last fetched candle
    assert await ex.get_price(PAIR) == 0.41


@pytest.mark.asyncio
async def test_no_market_data_source(config):
    ex = PaperExchange(config)
    with pytest.raises(ExchangeUnavailableError):
        await ex.get_candles(PAIR, 60, 0, 1)
    with pytest.raises(ExchangeUnavailableError):
        await ex.get_price(PAIR)


@pytest.mark.asyncio
async def test_nothing_rests_on_the_book(exchange):
    assert await exchange.cancel_order("paper-1") is False
    assert await exchange.get_open_orders(PAIR) == []


def test_start_balances_from_config(tmp_path):
    config = Settings(_env_file=None, paper_start_balance_quote=250.0, paper_start_balance_base=3.0)
    ex = PaperExchange(config)
    assert ex.balances == {"USDC": 250.0, "XRP": 3.0}
