"""Domain layer: entities, events, errors and storage interfaces."""
