"""
CaseFlow Engine - Transition Table

Declarative stage graphs, one per work item kind. This module is the single
source of truth for workflow legality: adding a stage or an edge is a data
change here, never a logic change in the engine.

The table is pure data with no side effects, so every (from, to) pair can be
enumerated in tests.

Case:   enquiry -> estimation -> quotation -> purchase_enquiry -> po_pi
        -> grn -> manufacturing -> invoicing -> closure
Ticket: support_ticket -> diagnosis -> resolution -> closure

Both kinds share three special stages:
- closure: terminal, no outgoing edges
- rejected: reopens only into the entry stage
- on_hold: reachable from every non-terminal stage, returns into the graph
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Tuple

from .models import WorkItemKind


# =============================================================================
# STAGE DEFINITIONS
# =============================================================================

class CaseStage(str, Enum):
    ENQUIRY = "enquiry"                     # Sales
    ESTIMATION = "estimation"               # Engineering
    QUOTATION = "quotation"                 # Sales
    PURCHASE_ENQUIRY = "purchase_enquiry"   # Procurement
    PO_PI = "po_pi"                         # Finance: purchase order / proforma invoice
    GRN = "grn"                             # Warehouse: goods receipt note
    MANUFACTURING = "manufacturing"         # Production
    INVOICING = "invoicing"                 # Finance
    CLOSURE = "closure"
    REJECTED = "rejected"
    ON_HOLD = "on_hold"


class TicketStage(str, Enum):
    SUPPORT_TICKET = "support_ticket"
    DIAGNOSIS = "diagnosis"
    RESOLUTION = "resolution"
    CLOSURE = "closure"
    REJECTED = "rejected"
    ON_HOLD = "on_hold"


TERMINAL_STAGE = "closure"
ON_HOLD_STAGE = "on_hold"
REJECTED_STAGE = "rejected"


# =============================================================================
# WORKFLOW DEFINITIONS BY KIND
# =============================================================================

# Format: {from_stage: [allowed to_stage, ...]}
WORKFLOW_DEFINITIONS: Dict[WorkItemKind, Dict[str, List[str]]] = {
    # =========================================================================
    # CASE: sales/engineering engagement
    # =========================================================================
    WorkItemKind.CASE: {
        CaseStage.ENQUIRY.value: [
            CaseStage.ESTIMATION.value,
            CaseStage.REJECTED.value,
            CaseStage.ON_HOLD.value,
        ],
        CaseStage.ESTIMATION.value: [
            CaseStage.QUOTATION.value,
            CaseStage.ENQUIRY.value,
            CaseStage.REJECTED.value,
            CaseStage.ON_HOLD.value,
        ],
        CaseStage.QUOTATION.value: [
            CaseStage.PURCHASE_ENQUIRY.value,
            CaseStage.ESTIMATION.value,
            CaseStage.REJECTED.value,
            CaseStage.ON_HOLD.value,
        ],
        CaseStage.PURCHASE_ENQUIRY.value: [
            CaseStage.PO_PI.value,
            CaseStage.QUOTATION.value,
            CaseStage.REJECTED.value,
            CaseStage.ON_HOLD.value,
        ],
        CaseStage.PO_PI.value: [
            CaseStage.GRN.value,
            CaseStage.PURCHASE_ENQUIRY.value,
            CaseStage.REJECTED.value,
            CaseStage.ON_HOLD.value,
        ],
        # Material is committed from GRN onwards, no rejection
        CaseStage.GRN.value: [
            CaseStage.MANUFACTURING.value,
            CaseStage.PO_PI.value,
            CaseStage.ON_HOLD.value,
        ],
        CaseStage.MANUFACTURING.value: [
            CaseStage.INVOICING.value,
            CaseStage.GRN.value,
            CaseStage.ON_HOLD.value,
        ],
        CaseStage.INVOICING.value: [
            CaseStage.CLOSURE.value,
            CaseStage.MANUFACTURING.value,
            CaseStage.ON_HOLD.value,
        ],
        CaseStage.REJECTED.value: [
            CaseStage.ENQUIRY.value,     # Reopen
            CaseStage.ON_HOLD.value,
        ],
        CaseStage.ON_HOLD.value: [
            CaseStage.ENQUIRY.value,
            CaseStage.ESTIMATION.value,
            CaseStage.QUOTATION.value,
            CaseStage.PURCHASE_ENQUIRY.value,
            CaseStage.PO_PI.value,
            CaseStage.GRN.value,
            CaseStage.MANUFACTURING.value,
            CaseStage.INVOICING.value,
        ],
        CaseStage.CLOSURE.value: [],
    },

    # =========================================================================
    # TICKET: support request
    # =========================================================================
    WorkItemKind.TICKET: {
        TicketStage.SUPPORT_TICKET.value: [
            TicketStage.DIAGNOSIS.value,
            TicketStage.REJECTED.value,
            TicketStage.ON_HOLD.value,
        ],
        TicketStage.DIAGNOSIS.value: [
            TicketStage.RESOLUTION.value,
            TicketStage.SUPPORT_TICKET.value,
            TicketStage.REJECTED.value,
            TicketStage.ON_HOLD.value,
        ],
        TicketStage.RESOLUTION.value: [
            TicketStage.CLOSURE.value,
            TicketStage.DIAGNOSIS.value,
            TicketStage.ON_HOLD.value,
        ],
        TicketStage.REJECTED.value: [
            TicketStage.SUPPORT_TICKET.value,
            TicketStage.ON_HOLD.value,
        ],
        TicketStage.ON_HOLD.value: [
            TicketStage.SUPPORT_TICKET.value,
            TicketStage.DIAGNOSIS.value,
            TicketStage.RESOLUTION.value,
        ],
        TicketStage.CLOSURE.value: [],
    },
}

INITIAL_STAGES: Dict[WorkItemKind, str] = {
    WorkItemKind.CASE: CaseStage.ENQUIRY.value,
    WorkItemKind.TICKET: TicketStage.SUPPORT_TICKET.value,
}

# Happy path per kind, used for progress tracking
MAIN_PATHS: Dict[WorkItemKind, Tuple[str, ...]] = {
    WorkItemKind.CASE: (
        CaseStage.ENQUIRY.value,
        CaseStage.ESTIMATION.value,
        CaseStage.QUOTATION.value,
        CaseStage.PURCHASE_ENQUIRY.value,
        CaseStage.PO_PI.value,
        CaseStage.GRN.value,
        CaseStage.MANUFACTURING.value,
        CaseStage.INVOICING.value,
        CaseStage.CLOSURE.value,
    ),
    WorkItemKind.TICKET: (
        TicketStage.SUPPORT_TICKET.value,
        TicketStage.DIAGNOSIS.value,
        TicketStage.RESOLUTION.value,
        TicketStage.CLOSURE.value,
    ),
}

# Display number prefix per kind; tickets get their own counter scope
DISPLAY_PREFIXES: Dict[WorkItemKind, str] = {
    WorkItemKind.CASE: "",
    WorkItemKind.TICKET: "TKT",
}


# =============================================================================
# LOOKUP
# =============================================================================

def _key(value) -> str:
    return value.value if isinstance(value, Enum) else value


class TransitionTable:
    """Read-only lookups over WORKFLOW_DEFINITIONS."""

    @staticmethod
    def definition(kind: WorkItemKind) -> Dict[str, List[str]]:
        return WORKFLOW_DEFINITIONS[WorkItemKind(kind)]

    @staticmethod
    def allowed(kind: WorkItemKind, from_stage: str, to_stage: str) -> bool:
        """True if the edge from_stage -> to_stage exists for this kind."""
        targets = TransitionTable.definition(kind).get(_key(from_stage))
        if targets is None:
            return False
        return _key(to_stage) in targets

    @staticmethod
    def next_stages(kind: WorkItemKind, stage: str) -> List[str]:
        return list(TransitionTable.definition(kind).get(_key(stage), []))

    @staticmethod
    def stages(kind: WorkItemKind) -> FrozenSet[str]:
        return frozenset(TransitionTable.definition(kind).keys())

    @staticmethod
    def is_stage(kind: WorkItemKind, stage: str) -> bool:
        return _key(stage) in TransitionTable.definition(kind)

    @staticmethod
    def initial_stage(kind: WorkItemKind) -> str:
        return INITIAL_STAGES[WorkItemKind(kind)]

    @staticmethod
    def terminal_stage(kind: WorkItemKind) -> str:
        return TERMINAL_STAGE

    @staticmethod
    def is_terminal(kind: WorkItemKind, stage: str) -> bool:
        return _key(stage) == TransitionTable.terminal_stage(kind)

    @staticmethod
    def main_path(kind: WorkItemKind) -> Tuple[str, ...]:
        return MAIN_PATHS[WorkItemKind(kind)]

    @staticmethod
    def display_prefix(kind: WorkItemKind) -> str:
        return DISPLAY_PREFIXES[WorkItemKind(kind)]

    @staticmethod
    def all_pairs(kind: WorkItemKind) -> List[Tuple[str, str]]:
        """Every (from, to) combination over the kind's stage set."""
        stages = sorted(TransitionTable.stages(kind))
        return [(a, b) for a in stages for b in stages]
