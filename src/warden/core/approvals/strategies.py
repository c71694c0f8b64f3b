from __future__ import annotations

from typing import Any

from warden.core.approvals.schemas import ApprovalRequest, Approver, Outcome, Vote


class ApprovalStrategy:
    """Aggregates the recorded votes of a request's approver set into one outcome.

    ``approvers`` is the request's current approver set, ``votes`` maps approver id to
    that approver's latest decision. Votes from approvers outside the set are ignored.
    """

    name = "base"

    def evaluate(self, approvers: list[Approver], votes: dict[str, Vote], required_approvals: int) -> Outcome:
        raise NotImplementedError

    def can_vote(self, approvers: list[Approver], votes: dict[str, Vote], approver_id: str) -> bool:
        return any(approver.id == approver_id for approver in approvers)

    def apply_escalation(self, request: ApprovalRequest, new_approver_ids: list[str]) -> dict[str, Any]:
        return {"approver_ids": _merge(request.approver_ids, new_approver_ids)}


def _merge(current: list[str], added: list[str]) -> list[str]:
    merged = list(current)
    for approver_id in added:
        if approver_id not in merged:
            merged.append(approver_id)
    return merged


def _tally(approvers: list[Approver], votes: dict[str, Vote]) -> tuple[int, int, int]:
    approvals = rejections = 0
    for approver in approvers:
        vote = votes.get(approver.id)
        if vote is None:
            continue
        if vote.decision == "APPROVED":
            approvals += 1
        else:
            rejections += 1
    return approvals, rejections, len(approvers) - approvals - rejections


class AnyOneStrategy(ApprovalStrategy):
    name = "any_one"

    def evaluate(self, approvers: list[Approver], votes: dict[str, Vote], required_approvals: int) -> Outcome:
        eligible = {approver.id for approver in approvers}
        cast = sorted((vote for vote in votes.values() if vote.approver_id in eligible), key=lambda vote: vote.ts_iso)
        if not cast:
            return "pending"
        return "approved" if cast[0].decision == "APPROVED" else "rejected"


class MajorityStrategy(ApprovalStrategy):
    name = "majority"

    def evaluate(self, approvers: list[Approver], votes: dict[str, Vote], required_approvals: int) -> Outcome:
        approvals, _, undecided = _tally(approvers, votes)
        half = len(approvers) / 2
        if approvals > half:
            return "approved"
        if approvals + undecided <= half:
            return "rejected"
        return "pending"


class WeightedStrategy(ApprovalStrategy):
    name = "weighted"

    def evaluate(self, approvers: list[Approver], votes: dict[str, Vote], required_approvals: int) -> Outcome:
        total = sum(approver.weight for approver in approvers)
        approved = 0.0
        open_weight = 0.0
        for approver in approvers:
            vote = votes.get(approver.id)
            if vote is None:
                open_weight += approver.weight
            elif vote.decision == "APPROVED":
                approved += approver.weight
        if total <= 0:
            return "pending"
        if approved > total / 2:
            return "approved"
        if approved + open_weight <= total / 2:
            return "rejected"
        return "pending"


class UnanimousStrategy(ApprovalStrategy):
    name = "unanimous"

    def evaluate(self, approvers: list[Approver], votes: dict[str, Vote], required_approvals: int) -> Outcome:
        approvals, rejections, _ = _tally(approvers, votes)
        if rejections:
            return "rejected"
        if approvers and approvals == len(approvers):
            return "approved"
        return "pending"


class CommitteeStrategy(UnanimousStrategy):
    name = "committee"

    def apply_escalation(self, request: ApprovalRequest, new_approver_ids: list[str]) -> dict[str, Any]:
        members = _merge([], new_approver_ids)
        return {"approver_ids": members, "required_approvals": len(members), "strategy": "committee"}


def ordered_by_sequence(approvers: list[Approver]) -> list[Approver]:
    return sorted(approvers, key=lambda item: (item.sequence is None, item.sequence or 0, item.id))


class HierarchicalStrategy(ApprovalStrategy):
    name = "hierarchical"

    def evaluate(self, approvers: list[Approver], votes: dict[str, Vote], required_approvals: int) -> Outcome:
        approvals, rejections, _ = _tally(approvers, votes)
        if rejections:
            return "rejected"
        if approvers and approvals == len(approvers):
            return "approved"
        return "pending"

    def next_approver(self, approvers: list[Approver], votes: dict[str, Vote]) -> Approver | None:
        for approver in ordered_by_sequence(approvers):
            vote = votes.get(approver.id)
            if vote is None or vote.decision != "APPROVED":
                return approver
        return None

    def can_vote(self, approvers: list[Approver], votes: dict[str, Vote], approver_id: str) -> bool:
        current = self.next_approver(approvers, votes)
        return current is not None and current.id == approver_id

    def apply_escalation(self, request: ApprovalRequest, new_approver_ids: list[str]) -> dict[str, Any]:
        replaced = _merge([], new_approver_ids)
        return {"approver_ids": replaced, "required_approvals": len(replaced)}


class ParallelStrategy(ApprovalStrategy):
    name = "parallel"

    def evaluate(self, approvers: list[Approver], votes: dict[str, Vote], required_approvals: int) -> Outcome:
        approvals, rejections, _ = _tally(approvers, votes)
        if rejections:
            return "rejected"
        if approvals >= max(1, required_approvals):
            return "approved"
        return "pending"

    def apply_escalation(self, request: ApprovalRequest, new_approver_ids: list[str]) -> dict[str, Any]:
        merged = _merge(request.approver_ids, new_approver_ids)
        added = len(merged) - len(request.approver_ids)
        return {"approver_ids": merged, "required_approvals": request.required_approvals + added}


class SubstituteStrategy(ParallelStrategy):
    name = "substitute"

    def apply_escalation(self, request: ApprovalRequest, new_approver_ids: list[str]) -> dict[str, Any]:
        replaced = _merge([], new_approver_ids)
        return {"approver_ids": replaced, "required_approvals": len(replaced)}


class AutomaticStrategy(ApprovalStrategy):
    name = "automatic"

    def evaluate(self, approvers: list[Approver], votes: dict[str, Vote], required_approvals: int) -> Outcome:
        approvals, rejections, _ = _tally(approvers, votes)
        if approvals:
            return "approved"
        if rejections:
            return "rejected"
        return "pending"

    def apply_escalation(self, request: ApprovalRequest, new_approver_ids: list[str]) -> dict[str, Any]:
        return {}


STRATEGIES: dict[str, ApprovalStrategy] = {
    strategy.name: strategy
    for strategy in (
        AnyOneStrategy(),
        MajorityStrategy(),
        WeightedStrategy(),
        UnanimousStrategy(),
        CommitteeStrategy(),
        HierarchicalStrategy(),
        ParallelStrategy(),
        SubstituteStrategy(),
        AutomaticStrategy(),
    )
}


def get_strategy(name: str) -> ApprovalStrategy:
    strategy = STRATEGIES.get(name)
    if strategy is None:
        raise KeyError(f"unknown approval strategy: {name}")
    return strategy
