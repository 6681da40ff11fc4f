"""SQLite repositories. ``announcement_repo`` implements the scheduled post registry."""
