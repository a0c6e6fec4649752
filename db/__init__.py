"""Database helpers for castforge."""

from db.episode_patch import EpisodePatch, merge_additional_data
from db.episode_store import EpisodeStore
from db.models import Episode, Guest, NewEpisode

__all__ = ["Episode", "EpisodePatch", "EpisodeStore", "Guest", "NewEpisode", "merge_additional_data"]
