"""Collaborative terminal hub: shared agent sessions, chat and live preview."""
