from .change import AnalyticsSnapshot, ChangeCheckpoint, DetectedChange  # noqa: F401
