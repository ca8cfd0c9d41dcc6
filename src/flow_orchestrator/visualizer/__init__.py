"""Visualizer package - Rich terminal views for orchestration runs."""

from .orchestration_view import render_batch_plan, render_orchestration, render_orchestration_list

__all__ = [
	"render_batch_plan",
	"render_orchestration",
	"render_orchestration_list",
]
