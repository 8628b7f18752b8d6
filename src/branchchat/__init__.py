"""Branchable chat history: fork on edit, replay exactly the right context."""

__version__ = "0.1.0"
