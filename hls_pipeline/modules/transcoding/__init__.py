"""Transcoding module turning a source video into a published HLS package.

Stages: workspace allocation, source fetch, per-variant encode, master
manifest assembly and publishing to object storage.
"""
