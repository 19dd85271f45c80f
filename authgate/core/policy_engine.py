"""
In-memory policy evaluator.

The engine materializes the policy store into three structures:
- the set of known roles
- allow rules indexed by subject
- grouping edges (member -> groups) for role membership and inheritance

A request ``(subject, object, action)`` is allowed when some rule reachable
from the subject, directly or through a grouping chain, has a matching object
pattern and either the same action or ``*``.

Every mutation is written to the store first and applied to memory only after
the write succeeded, under an exclusive lock. ``enforce`` and the lookup
methods take the shared side of the same lock.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from authgate.core.errors import InvalidPolicyError
from authgate.core.locks import ReadWriteLock
from authgate.core.normalize import ROLE_ANCHOR, ROLE_PREFIX
from authgate.core.path_match import ObjectMatcher
from authgate.core.policy_store import (
    PTYPE_GROUPING,
    PTYPE_POLICY,
    PTYPE_ROLE,
    PolicyRow,
    PolicyStore,
)

logger = logging.getLogger(__name__)

WILDCARD_ACTION = "*"
DEFAULT_MAX_DEPTH = 10


@dataclass(frozen=True, order=True)
class Policy:
    """An allow rule. Ordering is by subject, object, action."""
    subject: str
    object: str
    action: str

    def as_row(self) -> PolicyRow:
        return (PTYPE_POLICY, self.subject, self.object, self.action)


@dataclass(frozen=True, order=True)
class Grouping:
    """``member`` holds or inherits from ``group``."""
    member: str
    group: str

    def as_row(self) -> PolicyRow:
        return (PTYPE_GROUPING, self.member, self.group)


@dataclass
class _State:
    roles: Set[str]
    policies: Dict[str, Set[Tuple[str, str]]]
    groups: Dict[str, Set[str]]

    @classmethod
    def empty(cls) -> "_State":
        return cls(roles=set(), policies={}, groups={})


def _matches_filter(fields: Tuple[str, ...], field_index: int, values: Tuple[str, ...]) -> bool:
    for offset, value in enumerate(values):
        if value == "":
            continue
        position = field_index + offset
        if position >= len(fields) or fields[position] != value:
            return False
    return True


class PolicyEngine:
    """
    Explicitly owned policy evaluator.

    Create one per application (or per test) and pass it to the components
    that need it; there is no process-wide instance.
    """

    def __init__(
        self,
        store: PolicyStore,
        matcher: Optional[ObjectMatcher] = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ):
        self._store = store
        self._matcher = matcher or ObjectMatcher()
        self._max_depth = max_depth
        self._lock = ReadWriteLock()
        self._state = _State.empty()

    @property
    def store(self) -> PolicyStore:
        return self._store

    # Loading

    def load(self) -> None:
        """Replace the in-memory state with the store's current contents."""
        rows = self._store.load_all()
        state = _State.empty()
        skipped = 0

        for row in rows:
            ptype, fields = row[0], tuple(row[1:])
            if ptype == PTYPE_ROLE and len(fields) >= 1 and fields[0]:
                state.roles.add(fields[0])
            elif ptype == PTYPE_GROUPING and len(fields) >= 2 and fields[0] and fields[1]:
                member, group = fields[0], fields[1]
                if group == ROLE_ANCHOR:
                    # legacy existence marker
                    state.roles.add(member)
                else:
                    state.groups.setdefault(member, set()).add(group)
            elif ptype == PTYPE_POLICY and len(fields) >= 3 and all(fields[:3]):
                state.policies.setdefault(fields[0], set()).add((fields[1], fields[2]))
            else:
                skipped += 1
                logger.warning(f"Skipping malformed policy row: {row}")

        with self._lock.write():
            self._state = state

        logger.info(
            f"Loaded policy state: {len(state.roles)} roles, "
            f"{sum(len(v) for v in state.policies.values())} rules, "
            f"{sum(len(v) for v in state.groups.values())} groupings"
            + (f", {skipped} skipped" if skipped else "")
        )

    # Evaluation

    def enforce(self, subject: str, obj: str, action: str) -> bool:
        """Return True when ``subject`` may perform ``action`` on ``obj``."""
        with self._lock.read():
            for candidate in self._reachable(subject):
                for rule_object, rule_action in self._state.policies.get(candidate, ()):
                    if rule_action != action and rule_action != WILDCARD_ACTION:
                        continue
                    if self._matcher.match(obj, rule_object):
                        return True
        return False

    def _reachable(self, subject: str) -> List[str]:
        """Subject followed by every group reachable from it, breadth first."""
        seen = {subject}
        ordered = [subject]
        queue = deque([(subject, 0)])
        while queue:
            member, depth = queue.popleft()
            if depth >= self._max_depth:
                continue
            for group in self._state.groups.get(member, ()):
                if group not in seen:
                    seen.add(group)
                    ordered.append(group)
                    queue.append((group, depth + 1))
        return ordered

    # Rules

    def add_policy(self, subject: str, obj: str, action: str) -> bool:
        policy = self._checked_policy(subject, obj, action)
        with self._lock.write():
            if (policy.object, policy.action) in self._state.policies.get(policy.subject, ()):
                return False
            self._store.insert(policy.as_row())
            self._state.policies.setdefault(policy.subject, set()).add((policy.object, policy.action))
        return True

    def add_policies(self, policies: Iterable[Tuple[str, str, str]]) -> int:
        """Add several rules in one store transaction. Returns the number added."""
        checked = [self._checked_policy(*p) for p in policies]
        with self._lock.write():
            fresh = []
            for policy in sorted(set(checked)):
                if (policy.object, policy.action) not in self._state.policies.get(policy.subject, ()):
                    fresh.append(policy)
            if not fresh:
                return 0
            self._store.insert_many(p.as_row() for p in fresh)
            for policy in fresh:
                self._state.policies.setdefault(policy.subject, set()).add((policy.object, policy.action))
        return len(fresh)

    def remove_policy(self, subject: str, obj: str, action: str) -> bool:
        policy = Policy(subject, obj, action)
        with self._lock.write():
            rules = self._state.policies.get(subject)
            if not rules or (obj, action) not in rules:
                return False
            self._store.delete(policy.as_row())
            rules.discard((obj, action))
            if not rules:
                del self._state.policies[subject]
        return True

    def has_policy(self, subject: str, obj: str, action: str) -> bool:
        with self._lock.read():
            return (obj, action) in self._state.policies.get(subject, ())

    def get_policy(self) -> List[Policy]:
        with self._lock.read():
            return sorted(self._all_policies())

    def get_filtered_policy(self, field_index: int, *values: str) -> List[Policy]:
        """Rules whose fields starting at ``field_index`` equal ``values``.

        An empty string in ``values`` matches anything.
        """
        with self._lock.read():
            return sorted(self._filter_policies(field_index, values))

    def remove_filtered_policy(self, field_index: int, *values: str) -> bool:
        with self._lock.write():
            matched = self._filter_policies(field_index, values)
            if not matched:
                return False
            self._store.delete_many(p.as_row() for p in matched)
            for policy in matched:
                rules = self._state.policies.get(policy.subject)
                if rules is not None:
                    rules.discard((policy.object, policy.action))
                    if not rules:
                        del self._state.policies[policy.subject]
        return True

    def _all_policies(self) -> List[Policy]:
        return [
            Policy(subject, obj, act)
            for subject, rules in self._state.policies.items()
            for obj, act in rules
        ]

    def _filter_policies(self, field_index: int, values: Tuple[str, ...]) -> List[Policy]:
        if field_index == 0 and values and values[0]:
            candidates = [
                Policy(values[0], obj, act)
                for obj, act in self._state.policies.get(values[0], ())
            ]
        else:
            candidates = self._all_policies()
        return [
            p for p in candidates
            if _matches_filter((p.subject, p.object, p.action), field_index, values)
        ]

    @staticmethod
    def _checked_policy(subject: str, obj: str, action: str) -> Policy:
        if not subject:
            raise InvalidPolicyError("policy subject is empty")
        if not obj or not obj.startswith("/"):
            raise InvalidPolicyError(f"policy object must start with '/': {obj!r}")
        if not action:
            raise InvalidPolicyError("policy action is empty")
        return Policy(subject, obj, action)

    # Groupings

    def add_grouping(self, member: str, group: str) -> bool:
        if not member or not group:
            raise InvalidPolicyError("grouping member and group are required")
        with self._lock.write():
            if group in self._state.groups.get(member, ()):
                return False
            self._store.insert(Grouping(member, group).as_row())
            self._state.groups.setdefault(member, set()).add(group)
        return True

    def remove_grouping(self, member: str, group: str) -> bool:
        with self._lock.write():
            groups = self._state.groups.get(member)
            if not groups or group not in groups:
                return False
            self._store.delete(Grouping(member, group).as_row())
            groups.discard(group)
            if not groups:
                del self._state.groups[member]
        return True

    def has_grouping(self, member: str, group: str) -> bool:
        with self._lock.read():
            return group in self._state.groups.get(member, ())

    def get_grouping(self) -> List[Grouping]:
        with self._lock.read():
            return sorted(self._all_groupings())

    def get_filtered_grouping(self, field_index: int, *values: str) -> List[Grouping]:
        with self._lock.read():
            return sorted(self._filter_groupings(field_index, values))

    def remove_filtered_grouping(self, field_index: int, *values: str) -> bool:
        with self._lock.write():
            matched = self._filter_groupings(field_index, values)
            if not matched:
                return False
            self._store.delete_many(g.as_row() for g in matched)
            for grouping in matched:
                groups = self._state.groups.get(grouping.member)
                if groups is not None:
                    groups.discard(grouping.group)
                    if not groups:
                        del self._state.groups[grouping.member]
        return True

    def get_roles_for(self, member: str) -> List[str]:
        """Groups ``member`` belongs to directly."""
        with self._lock.read():
            return sorted(self._state.groups.get(member, ()))

    def get_implicit_roles_for(self, member: str) -> List[str]:
        """Groups ``member`` belongs to directly or through inheritance."""
        with self._lock.read():
            return self._reachable(member)[1:]

    def _all_groupings(self) -> List[Grouping]:
        return [
            Grouping(member, group)
            for member, groups in self._state.groups.items()
            for group in groups
        ]

    def _filter_groupings(self, field_index: int, values: Tuple[str, ...]) -> List[Grouping]:
        if field_index == 0 and values and values[0]:
            candidates = [Grouping(values[0], g) for g in self._state.groups.get(values[0], ())]
        else:
            candidates = self._all_groupings()
        return [
            g for g in candidates
            if _matches_filter((g.member, g.group), field_index, values)
        ]

    # Roles

    def add_role(self, role: str) -> bool:
        if not role:
            raise InvalidPolicyError("role name is empty")
        with self._lock.write():
            if role in self._state.roles:
                return False
            self._store.insert((PTYPE_ROLE, role))
            self._state.roles.add(role)
        return True

    def remove_role(self, role: str) -> bool:
        """Forget that ``role`` exists. Rules and groupings are left alone."""
        with self._lock.write():
            if role not in self._state.roles:
                return False
            self._store.delete_many([(PTYPE_ROLE, role), (PTYPE_GROUPING, role, ROLE_ANCHOR)])
            self._state.roles.discard(role)
        return True

    def has_role(self, role: str) -> bool:
        with self._lock.read():
            return role in self._known_roles()

    def roles(self) -> List[str]:
        """Every role that exists or appears on either side of a grouping."""
        with self._lock.read():
            return sorted(self._known_roles())

    def _known_roles(self) -> Set[str]:
        known = set(self._state.roles)
        for member, groups in self._state.groups.items():
            if member.startswith(ROLE_PREFIX):
                known.add(member)
            known.update(g for g in groups if g.startswith(ROLE_PREFIX))
        known.discard(ROLE_ANCHOR)
        return known

    # Introspection

    def stats(self) -> Dict[str, int]:
        with self._lock.read():
            return {
                "roles": len(self._known_roles()),
                "policies": sum(len(v) for v in self._state.policies.values()),
                "groupings": sum(len(v) for v in self._state.groups.values()),
            }
