"""Metric registry, summaries with streaming quantiles, text exposition and Pushgateway client."""

__version__ = "0.1.0"
__all__ = ["exposition", "model", "push", "quantile", "registry", "summary"]