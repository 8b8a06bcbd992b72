"""Measure dev server start, page load and hot reload times with a real browser."""

from .config import Options
from .measure import MeasurementResult, MeasurementSession, measure

__all__ = ["MeasurementResult", "MeasurementSession", "Options", "measure"]
