"""Service layer: timer control, recurring jobs, geofencing, display ticking."""
