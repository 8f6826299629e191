# === NAVMAP v1 ===
# {
#   "module": "SiteGraph.concurrency.__init__",
#   "purpose": "Concurrency helpers shared across SiteGraph components.",
#   "sections": []
# }
# === /NAVMAP ===

"""
Concurrency helpers shared across SiteGraph components.

Exposes :func:`create_executor`, which maps an execution policy onto a pool
(IO → threads for network fan-out, CPU → processes for bulk hashing).
"""

from .executors import create_executor

__all__ = ["create_executor"]
