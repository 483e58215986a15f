"""Device-side controllers: speech capture, playback and the session wiring."""
