#!/usr/bin/env python3
"""stockpilot: quantitative stock analysis and recommendations.

Usage:
    python main.py analyze AAPL                       # full analysis
    python main.py analyze AAPL MSFT NVDA --no-llm    # batch, rule-based sentiment
    python main.py fundamentals AAPL                  # ratios and summary
    python main.py backtest AAPL --strategy rsi       # replay a catalog strategy
    python main.py optimize AAPL --strategy rsi --grid oversold=25,30 overbought=70,75
    python main.py strategies                         # list catalog strategies
    python main.py accuracy                           # score saved analyses against today's prices
"""

import argparse
import json
import sys

from stockpilot.analysis.accuracy import records_from_analyses, summarize_accuracy
from stockpilot.analysis.backtesting import (
    STRATEGY_CATALOG,
    BacktestEngine,
    get_strategy,
    list_strategies,
)
from stockpilot.analysis.fundamental import FundamentalAnalyzer
from stockpilot.config import SETTINGS, Keys
from stockpilot.data_sources import (
    FundamentalsClient,
    JsonlAnalysisSink,
    LLMSentimentClient,
    MarketDataClient,
)
from stockpilot.errors import StockPilotError
from stockpilot.models import _jsonify, prices_to_frame
from stockpilot.pipeline.engine import AnalysisPipeline
from stockpilot.utils.logger import setup_logger

logger = setup_logger("main", SETTINGS.get("app", {}).get("log_level", "INFO"))


def _print_json(data) -> None:
    print(json.dumps(_jsonify(data), indent=2))


def _build_pipeline(args) -> AnalysisPipeline:
    sentiment = None
    if not getattr(args, "no_llm", False) and Keys.ANTHROPIC:
        sentiment = LLMSentimentClient()
    elif not getattr(args, "no_llm", False):
        logger.warning("ANTHROPIC_API_KEY not set; using rule-based sentiment")
    sink = None if getattr(args, "no_save", False) else JsonlAnalysisSink()
    return AnalysisPipeline(
        prices=MarketDataClient(),
        fundamentals=FundamentalsClient(),
        sentiment=sentiment,
        sink=sink,
        macro_score=getattr(args, "macro", None),
    )


def _parse_grid(pairs) -> dict:
    grid = {}
    for pair in pairs:
        key, _, values = pair.partition("=")
        if not key or not values:
            raise SystemExit(f"Bad grid entry {pair!r}; expected name=v1,v2")
        grid[key] = [float(v) if "." in v else int(v) for v in values.split(",")]
    return grid


# ============================================================
# COMMANDS
# ============================================================

def cmd_analyze(args):
    """Run the analysis pipeline on symbol(s)."""
    with _build_pipeline(args) as pipeline:
        if len(args.symbols) == 1:
            _print_json(pipeline.analyze(args.symbols[0]).to_dict())
            return
        batch = pipeline.analyze_many(args.symbols, timeout=args.timeout)
    _print_json(batch.to_dict())
    if batch.errors:
        sys.exit(1)


def cmd_fundamentals(args):
    """Ratios, score and summary from the latest statements."""
    reports = FundamentalsClient(quarterly=not args.annual).get_reports(args.symbol)
    price = MarketDataClient().get_current_price(args.symbol)
    result = FundamentalAnalyzer().analyze(reports, price)
    result["ratios"] = result["ratios"].to_dict()
    _print_json({"symbol": args.symbol.upper(), "current_price": price, **result})


def cmd_backtest(args):
    """Backtest a catalog strategy."""
    engine = BacktestEngine(args.capital, args.commission, args.slippage)
    with _build_pipeline(args) as pipeline:
        result = pipeline.backtest(args.symbol, args.strategy, engine=engine)
    _print_json(result.to_dict())


def cmd_optimize(args):
    """Grid-search a catalog strategy's parameters."""
    grid = _parse_grid(args.grid)
    points = MarketDataClient().get_price_points(args.symbol, SETTINGS["data"]["price_period"])
    result = BacktestEngine().optimize(
        lambda **p: get_strategy(args.strategy, **p), prices_to_frame(points), grid,
    )
    _print_json({
        "best_params": result.best_params,
        "best": {
            k: v for k, v in result.best_result.to_dict().items()
            if k not in ("equity_curve", "trades")
        },
        "results": result.results,
    })


def cmd_accuracy(args):
    """Score saved analyses against current prices."""
    rows = JsonlAnalysisSink(args.file).read_all()
    if args.symbols:
        wanted = {s.upper() for s in args.symbols}
        rows = [r for r in rows if r.get("symbol") in wanted]
    client = MarketDataClient()
    prices = {}
    for symbol in sorted({r.get("symbol") for r in rows if r.get("symbol")}):
        try:
            prices[symbol] = client.get_current_price(symbol)
        except StockPilotError as e:
            logger.warning("No current price for %s: %s", symbol, e)
            prices[symbol] = None
    stats = summarize_accuracy(records_from_analyses(rows, prices))
    _print_json(stats.to_dict())


def cmd_strategies(args):
    """List the strategy catalog."""
    _print_json(list_strategies())


def main():
    parser = argparse.ArgumentParser(
        description="stockpilot: quantitative stock analysis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command")

    # analyze
    p = sub.add_parser("analyze", help="Run the analysis pipeline")
    p.add_argument("symbols", nargs="+", help="Ticker symbols")
    p.add_argument("--no-llm", action="store_true", help="Skip the LLM and use rule-based sentiment")
    p.add_argument("--no-save", action="store_true", help="Do not append results to the analyses file")
    p.add_argument("--macro", type=float, default=None, help="Macro score in [0, 1]")
    p.add_argument("--timeout", type=float, default=None, help="Overall batch timeout in seconds")
    p.set_defaults(func=cmd_analyze)

    # fundamentals
    p = sub.add_parser("fundamentals", help="Key ratios and summary")
    p.add_argument("symbol")
    p.add_argument("--annual", action="store_true", help="Use annual instead of quarterly statements")
    p.set_defaults(func=cmd_fundamentals)

    # backtest
    p = sub.add_parser("backtest", help="Backtest a catalog strategy")
    p.add_argument("symbol")
    p.add_argument("--strategy", default="ma_crossover", choices=list(STRATEGY_CATALOG))
    p.add_argument("--capital", type=float, default=None)
    p.add_argument("--commission", type=float, default=None)
    p.add_argument("--slippage", type=float, default=None)
    p.set_defaults(func=cmd_backtest, no_llm=True, no_save=True)

    # optimize
    p = sub.add_parser("optimize", help="Grid-search strategy parameters")
    p.add_argument("symbol")
    p.add_argument("--strategy", default="rsi", choices=list(STRATEGY_CATALOG))
    p.add_argument("--grid", nargs="+", required=True, help="name=v1,v2 ...")
    p.set_defaults(func=cmd_optimize)

    # accuracy
    p = sub.add_parser("accuracy", help="Score saved analyses against current prices")
    p.add_argument("symbols", nargs="*", help="Only these symbols (default: all)")
    p.add_argument("--file", default=None, help="Analyses file (default: settings output.analyses_file)")
    p.set_defaults(func=cmd_accuracy)

    # strategies
    p = sub.add_parser("strategies", help="List catalog strategies")
    p.set_defaults(func=cmd_strategies)

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        sys.exit(0)
    try:
        args.func(args)
    except StockPilotError as e:
        logger.error("%s", e)
        sys.exit(2)


if __name__ == "__main__":
    main()
