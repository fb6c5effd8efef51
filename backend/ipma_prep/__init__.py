"""Core data synchronisation and exam-attempt logic for IPMA Level C prep."""

__version__ = "0.1.0"
