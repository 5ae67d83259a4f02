"""Third-party AI service clients."""
