"""studyplan: conflict-aware study session scheduling agent."""

__version__ = "0.1.0"
