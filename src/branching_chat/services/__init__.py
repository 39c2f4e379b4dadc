"""Generation, file storage and turn orchestration services."""
