"""
featgraph: feature tracking and relationship graphs inside git

Feature records live in ``.featgraph/features/`` on whatever branch they
were created on; featgraph reads them across every local and remote
branch without checking anything out.
"""

try:
    from importlib.metadata import version
    __version__ = version("featgraph")
except Exception:
    __version__ = "0.0.0"  # Fallback for development

__all__ = ["__version__"]
