"""Candidate selection and safety tiers.

Everything here is a pure function of its inputs so the same records and
policy always give the same answer.
"""

from collections.abc import Iterable, Sequence
from enum import Enum

from rambo.models import Candidate, PolicyConfig, ProcessRecord, SafetyTier, TriggerOrigin
from rambo.system import own_pids

# Never terminated, whatever the configuration says.
SYSTEM_PROCESSES = frozenset(
    {
        "kernel_task",
        "launchd",
        "WindowServer",
        "loginwindow",
        "SystemUIServer",
        "Dock",
        "Finder",
        "Activity Monitor",
        "sudo",
        "su",
        "ssh",
        "sshd",
        "systemd",
        "init",
        "kthreadd",
        "migration",
        "rcu_gp",
        "rcu_par_gp",
        "watchdog",
        "systemd-logind",
        "systemd-networkd",
        "systemd-resolved",
        "Xorg",
        "Xwayland",
        "gnome-shell",
        "dbus-daemon",
    }
)

# Case-insensitive substrings of system-critical names.
CRITICAL_PATTERNS = (
    "kernel",
    "system",
    "apple",
    "security",
    "coreaudio",
    "bluetooth",
    "wifi",
)

# Below this pid processes are almost always early system daemons.
LOW_PID_LIMIT = 100

IDLE_CPU_PERCENT = 1.0


class Gate(Enum):
    """What the termination step may do with a candidate."""

    ALLOW = "allow"
    CONFIRM = "confirm"
    REFUSE = "refuse"


def select(records: Iterable[ProcessRecord], policy: PolicyConfig) -> list[ProcessRecord]:
    """
    Filter records down to reclaim candidates, keeping input order.

    The allow-list is absolute protection and is checked before anything else.
    """
    selected = []
    for record in records:
        if record.name in policy.allow_list:
            continue
        if record.rss_mb < policy.rss_threshold_mb:
            continue
        if record.is_foreground:
            continue
        if record.name in policy.deny_list:
            continue
        selected.append(record)
    return selected


def is_system_critical(record: ProcessRecord) -> bool:
    if record.name in SYSTEM_PROCESSES:
        return True
    lowered = record.name.lower()
    return any(pattern in lowered for pattern in CRITICAL_PATTERNS)


def classify_tier(
    record: ProcessRecord,
    policy: PolicyConfig,
    protected_pids: frozenset[int] | None = None,
) -> tuple[SafetyTier, str]:
    """
    Assign a safety tier and the reason for it. First matching rule wins.

    Args:
        record: Process to classify.
        policy: Supplies the RSS threshold and the "recently active" CPU level.
        protected_pids: Pids that must never be touched; defaults to this
            process and its parent.
    """
    if protected_pids is None:
        protected_pids = own_pids()

    if is_system_critical(record):
        return SafetyTier.FORBIDDEN, f"System process '{record.name}' must not be terminated"
    if record.pid in (0, 1):
        return SafetyTier.FORBIDDEN, f"Cannot terminate pid {record.pid}"
    if record.pid in protected_pids:
        return SafetyTier.FORBIDDEN, "Cannot terminate rambo itself or its parent"

    if record.pid < LOW_PID_LIMIT:
        return SafetyTier.DANGEROUS, f"Low pid {record.pid} indicates a system process"
    if record.is_foreground:
        return SafetyTier.DANGEROUS, "Process is in the foreground"
    if record.cpu_percent >= policy.active_cpu_percent:
        return SafetyTier.DANGEROUS, f"Process is active ({record.cpu_percent:.1f}% CPU)"
    if not record.cpu_sampled:
        return SafetyTier.RISKY, "CPU activity unknown"

    safe_rss = policy.rss_threshold_mb * policy.safe_rss_multiplier
    if record.rss_mb >= safe_rss and record.cpu_percent < IDLE_CPU_PERCENT:
        return SafetyTier.SAFE, f"Idle and holding {record.rss_mb} MB"

    return SafetyTier.RISKY, "Not clearly idle or not clearly large"


def assess(
    records: Sequence[ProcessRecord],
    policy: PolicyConfig,
    protected_pids: frozenset[int] | None = None,
) -> list[Candidate]:
    """select() plus a safety tier for every candidate."""
    if protected_pids is None:
        protected_pids = own_pids()
    candidates = []
    for record in select(records, policy):
        tier, reason = classify_tier(record, policy, protected_pids)
        candidates.append(Candidate(record=record, tier=tier, reason=reason))
    return candidates


def termination_gate(tier: SafetyTier, origin: TriggerOrigin, policy: PolicyConfig) -> Gate:
    """Decide whether a tier may be terminated for this trigger."""
    confirm_or_allow = Gate.CONFIRM if policy.require_confirmation else Gate.ALLOW
    refuse_or_allow = Gate.REFUSE if policy.require_confirmation else Gate.ALLOW

    table = {
        (SafetyTier.SAFE, TriggerOrigin.AUTO): Gate.ALLOW,
        (SafetyTier.SAFE, TriggerOrigin.MANUAL): confirm_or_allow,
        (SafetyTier.RISKY, TriggerOrigin.AUTO): refuse_or_allow,
        (SafetyTier.RISKY, TriggerOrigin.MANUAL): Gate.CONFIRM,
        (SafetyTier.DANGEROUS, TriggerOrigin.AUTO): Gate.REFUSE,
        (SafetyTier.DANGEROUS, TriggerOrigin.MANUAL): Gate.CONFIRM,
        (SafetyTier.FORBIDDEN, TriggerOrigin.AUTO): Gate.REFUSE,
        (SafetyTier.FORBIDDEN, TriggerOrigin.MANUAL): Gate.REFUSE,
    }
    return table[(tier, origin)]


def auto_eligible(candidates: Iterable[Candidate], policy: PolicyConfig) -> list[Candidate]:
    """Candidates an automatic boost would terminate without asking anyone."""
    return [
        c for c in candidates if termination_gate(c.tier, TriggerOrigin.AUTO, policy) is Gate.ALLOW
    ]
