"""Core domain: models, pipelines, windowing, detection and alerting."""
