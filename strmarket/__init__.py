"""strmarket: short-term-rental scraping orchestration and market analytics."""

__version__ = "0.1.0"
