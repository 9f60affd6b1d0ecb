# Services layer for provider integration and rate resolution
