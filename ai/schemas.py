"""
Reasoning agent schemas.

Defines the contract between the trading cycle and the external reasoning
agent. Agent output is untrusted: every payload is validated here before it
becomes a TradingDecision.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class DecisionPayload(BaseModel):
    """One decision as returned by the reasoning agent."""
    symbol: str = Field(..., min_length=1)
    operation: Literal["open", "close", "hold"]
    direction: Optional[Literal["long", "short"]] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    leverage: Optional[int] = Field(None, ge=1, le=100)
    stop_loss: Optional[float] = Field(None, gt=0)
    take_profit: Optional[float] = Field(None, gt=0)
    reasoning: str = ""

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v):
        return v.strip().upper()

    @model_validator(mode="after")
    def direction_required_for_open(self):
        if self.operation == "open" and self.direction is None:
            raise ValueError("direction is required for open operations")
        return self
