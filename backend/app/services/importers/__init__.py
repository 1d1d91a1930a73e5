from app.services.importers import assessment_scores, students  # noqa: F401  (registration)
from app.services.importers.base import get_importer

__all__ = ["get_importer"]
