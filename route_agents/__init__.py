"""
Multi-agent route consensus for DeFi cross-chain swaps.

Specialized agents score candidate routes; the AgentCoordinator routes their
messages and aggregates their votes into a single decision.
"""
__version__ = "0.1.0"
