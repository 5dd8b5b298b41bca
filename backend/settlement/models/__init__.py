from .contracts import Contract, ContractSignature, IntegrityAudit
from .payments import Payment, EscrowMovement, EscrowTimeout
from .disputes import Dispute
from .events import SettlementEvent

__all__ = [
    'Contract', 'ContractSignature', 'IntegrityAudit',
    'Payment', 'EscrowMovement', 'EscrowTimeout',
    'Dispute',
    'SettlementEvent',
]
