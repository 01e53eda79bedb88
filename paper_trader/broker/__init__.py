"""Remote collaborators: market data quotes, charts, and the identity service."""

from paper_trader.broker.quotes import (
    PolygonQuoteSource,
    Quote,
    QuoteSource,
    TickerInfo,
    YFinanceQuoteSource,
    create_quote_source,
    fetch_quotes,
    quote_prices,
)
from paper_trader.broker.charts import ChartData, ChartRange, load_chart
from paper_trader.broker.identity import (
    IdentityClient,
    LoginResponse,
    Profile,
    SignUpRequest,
    SignUpResponse,
)
