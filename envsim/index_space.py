"""
Index space for the envsim engine
Named discrete dimensions, their members, and the index tuples they span
"""

from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union
import itertools
import logging

from envsim.constants import INDEX_SET
from envsim.exceptions import (
    NameCollisionError,
    UnknownSymbolError,
    SignatureMismatchError,
    ModelBuildError,
)
from envsim.types import Member, MemberTuple

logger = logging.getLogger(__name__)


def _check_member(set_name: str, member: Member) -> None:
    if isinstance(member, bool) or not isinstance(member, (str, int)):
        raise ModelBuildError(
            code="invalid_member",
            message=f"Members of index set '{set_name}' must be strings or integers, got {member!r}",
            details={"index_set": set_name, "member": repr(member)},
        )


def _unique_members(set_name: str, members: Iterable[Member]) -> Tuple[Member, ...]:
    result: List[Member] = []
    seen = set()
    for member in members:
        _check_member(set_name, member)
        if member in seen:
            raise NameCollisionError(
                "index_set_member",
                f"{set_name}/{member}",
                details={"index_set": set_name, "member": member},
            )
        seen.add(member)
        result.append(member)
    return tuple(result)


class IndexSet:
    """
    A named dimension with an ordered sequence of unique members

    A sub-indexed set lists its members separately for every member of its
    parent set (e.g. reaches within each catchment).
    """

    def __init__(
        self,
        name: str,
        members: Union[Sequence[Member], Mapping[Member, Sequence[Member]]],
        parent: Optional["IndexSet"] = None,
        order: int = 0,
    ):
        self.name = name
        self.parent = parent
        self.order = order
        self._by_parent: Dict[Member, Tuple[Member, ...]] = {}

        if parent is None:
            if isinstance(members, Mapping):
                raise ModelBuildError(
                    code="invalid_index_set",
                    message=f"Index set '{name}' lists members per parent but has no parent set",
                    details={"index_set": name},
                )
            self._members = _unique_members(name, members)
        else:
            if not isinstance(members, Mapping):
                raise ModelBuildError(
                    code="invalid_index_set",
                    message=(
                        f"Index set '{name}' is sub-indexed by '{parent.name}'; "
                        f"give its members as {{parent member: [members]}}"
                    ),
                    details={"index_set": name, "parent": parent.name},
                )
            parent_members = set(parent.all_members())
            for parent_member, sub_members in members.items():
                if parent_member not in parent_members:
                    raise ModelBuildError(
                        code="invalid_index_set",
                        message=f"'{parent_member}' is not a member of '{parent.name}'",
                        details={"index_set": name, "parent": parent.name},
                    )
                self._by_parent[parent_member] = _unique_members(name, sub_members)
            for parent_member in parent.all_members():
                self._by_parent.setdefault(parent_member, ())
            flat: List[Member] = []
            for sub_members in self._by_parent.values():
                for member in sub_members:
                    if member not in flat:
                        flat.append(member)
            self._members = tuple(flat)

    @property
    def is_sub_indexed(self) -> bool:
        return self.parent is not None

    def all_members(self) -> Tuple[Member, ...]:
        """Every member, across all parent members for sub-indexed sets"""
        return self._members

    def members_for(self, parent_member: Optional[Member] = None) -> Tuple[Member, ...]:
        """Members under one parent member (or all members of a plain set)"""
        if self.parent is None:
            return self._members
        if parent_member is None:
            return self._members
        return self._by_parent.get(parent_member, ())

    def count(self, parent_member: Optional[Member] = None) -> int:
        return len(self.members_for(parent_member))

    def __contains__(self, member: Member) -> bool:
        return member in self._members

    def __repr__(self) -> str:
        if self.parent is not None:
            return f"IndexSet({self.name!r}, parent={self.parent.name!r})"
        return f"IndexSet({self.name!r}, {list(self._members)!r})"


class IndexSpace:
    """
    Registry of index sets and the index tuples their signatures span

    Signatures are tuples of index set names kept in canonical order
    (registration order), so a parent set always precedes its children.
    """

    def __init__(self):
        self._sets: Dict[str, IndexSet] = {}
        self._instances: Dict[Tuple[str, ...], List[MemberTuple]] = {}
        self._offsets: Dict[Tuple[str, ...], Dict[MemberTuple, int]] = {}

    def add(
        self,
        name: str,
        members: Union[Sequence[Member], Mapping[Member, Sequence[Member]]],
        parent: Optional[str] = None,
    ) -> IndexSet:
        """
        Register an index set

        Raises:
            NameCollisionError: If the set name or a member is duplicated
            UnknownSymbolError: If the parent set does not exist
        """
        if name in self._sets:
            raise NameCollisionError(INDEX_SET, name)
        parent_set = self.get(parent) if parent is not None else None
        index_set = IndexSet(name, members, parent_set, order=len(self._sets))
        self._sets[name] = index_set
        logger.debug(
            f"Registered index set '{name}' with {len(index_set.all_members())} member(s)"
            + (f", sub-indexed by '{parent}'" if parent else "")
        )
        return index_set

    def get(self, name: str) -> IndexSet:
        try:
            return self._sets[name]
        except KeyError:
            raise UnknownSymbolError(INDEX_SET, name) from None

    def __contains__(self, name: str) -> bool:
        return name in self._sets

    def __iter__(self) -> Iterator[IndexSet]:
        return iter(self._sets.values())

    def __len__(self) -> int:
        return len(self._sets)

    @property
    def names(self) -> List[str]:
        return list(self._sets)

    def canonical(self, signature: Iterable[str], owner: Optional[str] = None) -> Tuple[str, ...]:
        """
        Validate a signature and return it in canonical order

        Raises:
            UnknownSymbolError: If a set is not registered
            SignatureMismatchError: If a set repeats or a sub-indexed set
                appears without its parent
        """
        names = list(signature)
        sets = [self.get(n) for n in names]
        if len(set(names)) != len(names):
            raise SignatureMismatchError(
                f"Index set signature {tuple(names)} of '{owner}' repeats an index set",
                details={"symbol": owner, "signature": names},
            )
        present = set(names)
        for index_set in sets:
            if index_set.parent is not None and index_set.parent.name not in present:
                raise SignatureMismatchError(
                    f"'{owner}' is indexed by '{index_set.name}' but not by its parent "
                    f"index set '{index_set.parent.name}'",
                    details={
                        "symbol": owner,
                        "index_set": index_set.name,
                        "parent": index_set.parent.name,
                    },
                )
        return tuple(s.name for s in sorted(sets, key=lambda s: s.order))

    def union(self, *signatures: Iterable[str], owner: Optional[str] = None) -> Tuple[str, ...]:
        merged: List[str] = []
        for signature in signatures:
            for name in signature:
                if name not in merged:
                    merged.append(name)
        return self.canonical(merged, owner=owner)

    def instances(self, signature: Tuple[str, ...]) -> List[MemberTuple]:
        """
        Ordered member tuples spanned by a canonical signature

        Sub-indexed sets contribute the members listed under the parent
        member already chosen earlier in the tuple.
        """
        cached = self._instances.get(signature)
        if cached is not None:
            return cached

        position = {name: i for i, name in enumerate(signature)}
        tuples: List[MemberTuple] = [()]
        for name in signature:
            index_set = self.get(name)
            if index_set.parent is None:
                tuples = [prefix + (m,) for prefix, m in itertools.product(tuples, index_set.all_members())]
            else:
                parent_pos = position[index_set.parent.name]
                tuples = [
                    prefix + (m,)
                    for prefix in tuples
                    for m in index_set.members_for(prefix[parent_pos])
                ]
        self._instances[signature] = tuples
        return tuples

    def count(self, signature: Tuple[str, ...]) -> int:
        return len(self.instances(signature))

    def offsets(self, signature: Tuple[str, ...]) -> Dict[MemberTuple, int]:
        """Map each member tuple of a signature to its position in storage"""
        cached = self._offsets.get(signature)
        if cached is None:
            cached = {members: i for i, members in enumerate(self.instances(signature))}
            self._offsets[signature] = cached
        return cached

    def members(self, name: str, bound: Optional[Mapping[str, Member]] = None) -> Tuple[Member, ...]:
        """Members of a set, restricted to the bound parent member when known"""
        index_set = self.get(name)
        if index_set.parent is not None and bound and index_set.parent.name in bound:
            return index_set.members_for(bound[index_set.parent.name])
        return index_set.all_members()


def project(
    bound: Mapping[str, Member],
    signature: Tuple[str, ...],
    pinned: Optional[Mapping[str, Member]] = None,
) -> MemberTuple:
    """
    Build the member tuple a reader addresses in a symbol of `signature`

    Sets the reader is indexed by are taken from its bound members
    (broadcasting a lower-dimensional symbol across the reader's extra
    dimensions); explicitly pinned sets override them.

    Raises:
        KeyError: If a set of the signature is neither bound nor pinned
    """
    if pinned:
        return tuple(pinned[s] if s in pinned else bound[s] for s in signature)
    return tuple(bound[s] for s in signature)
