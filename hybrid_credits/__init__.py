"""Hybrid Credits package.

This package contains the credit and quota reconciliation components:
- config: Configuration loading and management
- engine: Identity resolution, balance cache, remote ledger protocol,
  premium gate and the reconciliation engine
"""
