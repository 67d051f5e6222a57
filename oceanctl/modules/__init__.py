"""Core modules: data model, remote execution, playbooks, providers and lifecycle."""
