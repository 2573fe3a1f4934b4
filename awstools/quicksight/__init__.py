"""QuickSight analysis and dataset management."""

from awstools.quicksight.api import QuickSightAPI

__all__ = ["QuickSightAPI"]
