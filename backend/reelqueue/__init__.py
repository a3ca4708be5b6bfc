"""Durable transcoding queue with signed playback tokens."""
