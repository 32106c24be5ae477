"""
Reasoning Agent Module

Adapts the external reasoning agent's output into TradingDecision objects.
The agent only proposes; the risk layer remains the hard authority.
"""
