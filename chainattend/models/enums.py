import enum


class SessionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"


class ChainPhase(str, enum.Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"
    SNAPSHOT = "SNAPSHOT"


class ChainState(str, enum.Enum):
    ACTIVE = "ACTIVE"
    STALLED = "STALLED"  # no hop within the stall threshold; still accepts hops
    COMPLETED = "COMPLETED"


class TokenType(str, enum.Enum):
    CHAIN = "CHAIN"
    LATE_ENTRY = "LATE_ENTRY"
    EARLY_LEAVE = "EARLY_LEAVE"

    @property
    def standalone(self) -> bool:
        return self is not TokenType.CHAIN


class TokenStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    USED = "USED"
    EXPIRED = "EXPIRED"


class EntryStatus(str, enum.Enum):
    PRESENT_ENTRY = "PRESENT_ENTRY"
    LATE_ENTRY = "LATE_ENTRY"


class EntryMethod(str, enum.Enum):
    CHAIN = "CHAIN"
    LATE_QR = "LATE_QR"
    MANUAL = "MANUAL"


class FinalStatus(str, enum.Enum):
    PRESENT = "PRESENT"
    LATE = "LATE"
    EARLY_LEAVE = "EARLY_LEAVE"
    ABSENT = "ABSENT"


class ScanFlow(str, enum.Enum):
    ENTRY_CHAIN = "ENTRY_CHAIN"
    EXIT_CHAIN = "EXIT_CHAIN"
    SNAPSHOT_CHAIN = "SNAPSHOT_CHAIN"
    CHALLENGE = "CHALLENGE"
    LATE_ENTRY = "LATE_ENTRY"
    EARLY_LEAVE = "EARLY_LEAVE"

    @classmethod
    def for_phase(cls, phase: ChainPhase) -> "ScanFlow":
        return {
            ChainPhase.ENTRY: cls.ENTRY_CHAIN,
            ChainPhase.EXIT: cls.EXIT_CHAIN,
            ChainPhase.SNAPSHOT: cls.SNAPSHOT_CHAIN,
        }[phase]

    @classmethod
    def for_window(cls, token_type: TokenType) -> "ScanFlow":
        return cls.LATE_ENTRY if token_type is TokenType.LATE_ENTRY else cls.EARLY_LEAVE


# Synthetic origin of sequence 0 in every chain's history
TEACHER_ORIGIN = "TEACHER"
