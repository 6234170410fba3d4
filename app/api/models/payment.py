from datetime import datetime

from pydantic import BaseModel


class PaymentRecord(BaseModel):
    """
    A verified payment. One record per transaction hash; never mutated.
    """
    tx_hash: str
    amount: int  # settlement token base units
    sender: str
    recipient: str
    asset: str
    verified_at: datetime
