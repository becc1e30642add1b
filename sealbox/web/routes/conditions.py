"""
Escrow Condition API Routes
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ...sealing.escrow import EscrowGate
from ..dependencies import get_gate

router = APIRouter()


@router.get("/{reference}")
def get_condition_status(reference: str, gate: EscrowGate = Depends(get_gate)) -> Dict[str, Any]:
    """Current status of a release condition, as the gate sees it."""
    status = gate.status(reference)
    data = status.to_dict()
    data["satisfied"] = gate.check_condition(reference)
    return data
