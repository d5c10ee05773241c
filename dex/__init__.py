"""
Flash-loan DEX arbitrage engine: venue pricing, pool index, opportunity
scanning, protection checks, transaction building and execution.
"""
