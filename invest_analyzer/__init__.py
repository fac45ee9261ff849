"""Crypto investment analysis: NPV, IRR, beta, Monte Carlo and data quality."""
