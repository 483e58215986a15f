"""Voice Synthesizer implementations."""
