"""tickstream: live market data aggregation and streaming."""
