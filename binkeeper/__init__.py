"""Liquidity Book range-keeping agent."""
