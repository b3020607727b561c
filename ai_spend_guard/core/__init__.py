"""
Core modules for AI Spend Guard.

This package contains the rollup engine: record merging and aggregation,
cap evaluation, alert dispatch, and the rollup actor that sequences them.
"""
