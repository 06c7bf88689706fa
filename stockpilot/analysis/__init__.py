from .technical import TechnicalAnalyzer
from .fundamental import FundamentalAnalyzer
from .recommendation import RecommendationEngine
from .prediction import PricePredictor
from .backtesting import BacktestEngine, Strategy
