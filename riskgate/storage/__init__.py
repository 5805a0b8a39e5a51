"""Storage: engine/session management, repositories, maintenance."""
