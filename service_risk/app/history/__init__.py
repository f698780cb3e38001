from .window import HistoricalWindow, HistoricalWindowConfig, historical_timestamp

__all__ = ["HistoricalWindow", "HistoricalWindowConfig", "historical_timestamp"]
