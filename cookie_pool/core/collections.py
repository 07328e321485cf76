class CollectionNames:
    """MongoDB collection names used by the repositories."""

    ARTIFACTS = "artifacts"
    ATTEMPTS = "attempts"
    TARGETS = "targets"
