"""Typed contracts and prompt templates shared by the diagram-to-TikZ pipeline."""
