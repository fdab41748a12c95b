"""Core primitives: constants, exceptions, logging, utilities."""
