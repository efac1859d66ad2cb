"""
Divergence detection across the branches of a conversation.

Given every version group of a conversation and a position p, find the
distinct contents offered at p by branches that are genuine siblings there,
i.e. that have not already parted ways well before p.

The rule, applied to the branches that reach p:

1. The prefix divergence index of two branches is the first position where
   their message contents differ, or their overlap length if none does.
2. A branch is excluded when its divergence index with any other branch is
   strictly less than p - 1.
3. Surviving branches are grouped by their content at p. Two or more groups
   make p a divergence point.

Branch contents are interned once into integer sequences and the pairwise
indexes are computed lazily and cached, so annotating a whole version costs
O(branches^2 x shared prefix) for the conversation rather than a query per
position.
"""

import logging
import uuid
from itertools import combinations
from typing import Dict, List, Sequence, Tuple

from minichat.exceptions import InvariantViolation, NotFoundError
from minichat.models.versioning import (
    AnnotatedMessage,
    BranchSnapshot,
    DivergenceVariant,
    VariantRef,
)

logger = logging.getLogger(__name__)


def prefix_divergence(a: Sequence, b: Sequence) -> int:
    """
    First index at which two sequences differ.

    Args:
        a: First sequence (contents, or interned content ids)
        b: Second sequence

    Returns:
        The first differing index, or ``min(len(a), len(b))`` when the
        overlapping range is identical
    """
    overlap = min(len(a), len(b))
    for index in range(overlap):
        if a[index] != b[index]:
            return index
    return overlap


class DivergenceIndex:
    """Read-only index over one snapshot of a conversation's branches."""

    def __init__(self, branches: Sequence[BranchSnapshot]):
        # Stable sort: equal timestamps keep creation order
        self.branches: List[BranchSnapshot] = sorted(
            branches, key=lambda b: (b.created_at, b.ordinal)
        )
        self._by_version: Dict[uuid.UUID, int] = {
            branch.version_id: i for i, branch in enumerate(self.branches)
        }

        interned: Dict[str, int] = {}
        self._sequences: List[Tuple[int, ...]] = [
            tuple(
                interned.setdefault(message.content, len(interned))
                for message in branch.messages
            )
            for branch in self.branches
        ]
        self._pairs: Dict[Tuple[int, int], int] = {}

    @property
    def max_length(self) -> int:
        """Length of the longest branch."""
        return max((branch.length for branch in self.branches), default=0)

    def branch(self, version_id: uuid.UUID) -> BranchSnapshot:
        """Look up a branch by version id."""
        try:
            return self.branches[self._by_version[version_id]]
        except KeyError:
            raise NotFoundError("VersionGroup", version_id) from None

    def pair_divergence(self, i: int, j: int) -> int:
        """Full-length prefix divergence index of branches ``i`` and ``j``."""
        key = (i, j) if i < j else (j, i)
        cached = self._pairs.get(key)
        if cached is None:
            cached = prefix_divergence(self._sequences[key[0]], self._sequences[key[1]])
            self._pairs[key] = cached
        return cached

    def candidates(self, position: int) -> List[int]:
        """Indexes of the branches that reach ``position``."""
        return [i for i, branch in enumerate(self.branches) if branch.reaches(position)]

    def variants_at(self, position: int) -> List[DivergenceVariant]:
        """
        Distinct contents offered at ``position`` by sibling branches.

        Args:
            position: Target position

        Returns:
            Variants in order of their earliest realizing branch; each lists
            its versions oldest first. A single entry means no divergence.

        Raises:
            InvariantViolation: If no branch reaches ``position``
        """
        candidates = self.candidates(position)
        if not candidates:
            logger.error(
                f"Divergence requested at position {position}, "
                f"longest branch has {self.max_length} positions"
            )
            raise InvariantViolation(
                f"No version group reaches position {position}"
            )

        # Both branches reach the position, so the truncated overlap is
        # position + 1 and only the full index can fall below the threshold.
        threshold = position - 1
        excluded = set()
        for i, j in combinations(candidates, 2):
            if self.pair_divergence(i, j) < threshold:
                excluded.add(i)
                excluded.add(j)

        variants: Dict[str, DivergenceVariant] = {}
        for i in candidates:
            if i in excluded:
                continue
            branch = self.branches[i]
            content = branch.messages[position].content
            variant = variants.get(content)
            if variant is None:
                variant = variants[content] = DivergenceVariant(content=content)
            variant.versions.append(
                VariantRef(version_id=branch.version_id, timestamp=branch.created_at)
            )
        return list(variants.values())

    def is_divergence_point(self, position: int) -> bool:
        """Whether two or more variants survive at ``position``."""
        return len(self.variants_at(position)) > 1

    def annotate(self, version_id: uuid.UUID) -> List[AnnotatedMessage]:
        """
        Annotate every message of one branch with its branch-point status.

        Args:
            version_id: Branch to annotate

        Returns:
            One entry per position; variants are only listed at divergence points

        Raises:
            NotFoundError: If the version is not part of this snapshot
        """
        branch = self.branch(version_id)
        annotated = []
        for position, message in enumerate(branch.messages):
            variants = self.variants_at(position)
            is_point = len(variants) > 1
            annotated.append(
                AnnotatedMessage(
                    message=message,
                    is_divergence_point=is_point,
                    variants=variants if is_point else [],
                )
            )
        return annotated


def divergence_variants(
    branches: Sequence[BranchSnapshot], position: int
) -> List[DivergenceVariant]:
    """Convenience wrapper: variants at ``position`` for a list of branches."""
    return DivergenceIndex(branches).variants_at(position)
