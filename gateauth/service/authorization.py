"""Role and hub gate for the gate client navigation.

Everything here is pure: no I/O, no session access. Navigation asks
``evaluate`` which area a session may enter and ``screens_for`` which screens
it may register; anything outside that set is unreachable, deep links
included, via ``resolve_screen``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Union


class Role(str, Enum):
    GUARD = "guard"
    HUB_MANAGER = "hub_manager"


ROLE_ALIASES: Dict[str, Role] = {"hm": Role.HUB_MANAGER}


class GateDecision(str, Enum):
    ADMITTED = "admitted"
    BLOCKED_NO_ROLE = "blocked_no_role"
    BLOCKED_NO_HUB = "blocked_no_hub"


class ScreenId(str, Enum):
    LOGIN_OTP = "LoginOtp"
    OTP_VERIFICATION = "OTPVerification"
    NO_ROLE_BLOCK = "NoRoleBlock"
    NO_HUB_BLOCK = "NoHubBlock"
    VISITOR_TYPE = "VisitorType"
    ENTRY_FORM = "EntryForm"
    VISITOR_PURPOSE = "VisitorPurpose"
    TOKEN_DISPLAY = "TokenDisplay"
    EXIT_CONFIRMATION = "ExitConfirmation"
    TICKET_LIST = "TicketList"
    TICKET_DETAIL = "TicketDetail"
    PROFILE = "Profile"


class Action(str, Enum):
    CREATE_ENTRY = "createEntry"
    CLOSE_TICKET = "closeTicket"
    VERIFY_TOKEN = "verifyToken"
    GATE_OPERATIONS = "gateOperations"
    VIEW_TICKETS = "viewTickets"
    VIEW_REPORTS = "viewReports"


# Auth flow and block screens; not role-gated
COMMON_SCREENS: FrozenSet[ScreenId] = frozenset(
    {
        ScreenId.LOGIN_OTP,
        ScreenId.OTP_VERIFICATION,
        ScreenId.NO_ROLE_BLOCK,
        ScreenId.NO_HUB_BLOCK,
    }
)

_GATE_SCREENS: FrozenSet[ScreenId] = frozenset(
    {
        ScreenId.VISITOR_TYPE,
        ScreenId.ENTRY_FORM,
        ScreenId.VISITOR_PURPOSE,
        ScreenId.TOKEN_DISPLAY,
        ScreenId.EXIT_CONFIRMATION,
        ScreenId.TICKET_LIST,
        ScreenId.TICKET_DETAIL,
        ScreenId.PROFILE,
    }
)

ROLE_SCREENS: Dict[Role, FrozenSet[ScreenId]] = {
    Role.GUARD: _GATE_SCREENS,
    Role.HUB_MANAGER: _GATE_SCREENS,
}

ROLE_ACTIONS: Dict[Role, FrozenSet[Action]] = {
    Role.GUARD: frozenset(Action),
    Role.HUB_MANAGER: frozenset({Action.VIEW_TICKETS, Action.VIEW_REPORTS}),
}

HOME_SCREEN = ScreenId.VISITOR_TYPE


@dataclass(frozen=True)
class GateResult:
    decision: GateDecision
    role: Optional[Role] = None

    @property
    def admitted(self) -> bool:
        return self.decision is GateDecision.ADMITTED


def normalize_role(name: Union[str, Role, None]) -> Optional[Role]:
    """Case-insensitive role lookup with alias support; unknown names give None."""
    if isinstance(name, Role):
        return name
    if not isinstance(name, str):
        return None
    key = name.strip().lower()
    if key in ROLE_ALIASES:
        return ROLE_ALIASES[key]
    try:
        return Role(key)
    except ValueError:
        return None


def evaluate(roles: Iterable[str], hub_ids: Iterable[str]) -> GateResult:
    """Decide whether a session may enter the gate area.

    The first recognised role in ``roles`` order is the admitted one. A
    missing role is reported before a missing hub.
    """
    role = next((r for r in map(normalize_role, roles) if r is not None), None)
    if role is None:
        return GateResult(GateDecision.BLOCKED_NO_ROLE)
    if not any(h for h in hub_ids if isinstance(h, str) and h.strip()):
        return GateResult(GateDecision.BLOCKED_NO_HUB, role)
    return GateResult(GateDecision.ADMITTED, role)


def screens_for(role: Union[str, Role, None]) -> FrozenSet[ScreenId]:
    resolved = normalize_role(role)
    if resolved is None:
        return COMMON_SCREENS
    return COMMON_SCREENS | ROLE_SCREENS[resolved]


def can_access_screen(screen: ScreenId, role: Union[str, Role, None]) -> bool:
    return screen in screens_for(role)


def can_do(action: Action, role: Union[str, Role, None]) -> bool:
    resolved = normalize_role(role)
    if resolved is None:
        return False
    return action in ROLE_ACTIONS[resolved]


def landing_screen(gate: Optional[GateResult]) -> ScreenId:
    """Where a session lands; ``None`` means not authenticated."""
    if gate is None:
        return ScreenId.LOGIN_OTP
    if gate.decision is GateDecision.BLOCKED_NO_ROLE:
        return ScreenId.NO_ROLE_BLOCK
    if gate.decision is GateDecision.BLOCKED_NO_HUB:
        return ScreenId.NO_HUB_BLOCK
    return HOME_SCREEN


def allowed_screens(gate: Optional[GateResult]) -> FrozenSet[ScreenId]:
    """Screens a session may reach; blocked sessions only get common screens."""
    if gate is None or not gate.admitted:
        return COMMON_SCREENS
    return screens_for(gate.role)


def resolve_screen(requested: Union[str, ScreenId], gate: Optional[GateResult]) -> ScreenId:
    """Route a navigation or deep-link target, falling back to the landing screen."""
    try:
        screen = ScreenId(requested)
    except ValueError:
        return landing_screen(gate)
    if screen in allowed_screens(gate):
        return screen
    return landing_screen(gate)
