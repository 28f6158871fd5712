"""Branch-structured conversation history."""

from discovery.branches.manager import ROOT_BRANCH_NAME, BranchManager

__all__ = ["ROOT_BRANCH_NAME", "BranchManager"]
