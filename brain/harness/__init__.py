"""Prompt assembly and retry harness around language-model calls."""
