"""Turns a photo into a published sticker set with greeting captions."""
