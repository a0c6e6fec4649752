"""PostgreSQL schema for episodes and guests."""

from __future__ import annotations


def ensure_episode_tables(conn) -> None:
    """Ensure the Episodes/Guests tables and their uniqueness indexes exist."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS public."Episodes" (
            "episodeId" TEXT PRIMARY KEY,
            "sourceVideoId" TEXT,
            "channelId" TEXT NOT NULL,
            "channelName" TEXT,
            "episodeTitle" TEXT NOT NULL,
            "episodeDescription" TEXT,
            "hostName" TEXT,
            "hostDescription" TEXT,
            "country" TEXT,
            "genre" TEXT,
            "languageCode" TEXT,
            "publishedDate" TIMESTAMPTZ,
            "episodeUri" TEXT,
            "originalUri" TEXT,
            "originalMediaUri" TEXT,
            "manifestUri" TEXT,
            "episodeImages" TEXT[] NOT NULL DEFAULT '{}',
            "durationMillis" BIGINT,
            "contentType" TEXT,
            "guests" TEXT[] NOT NULL DEFAULT '{}',
            "guestDescriptions" TEXT[] NOT NULL DEFAULT '{}',
            "guestImageUrls" TEXT[] NOT NULL DEFAULT '{}',
            "topics" TEXT[] NOT NULL DEFAULT '{}',
            "processingDone" BOOLEAN NOT NULL DEFAULT FALSE,
            "isSynced" BOOLEAN NOT NULL DEFAULT FALSE,
            "processingInfo" JSONB NOT NULL DEFAULT '{}'::jsonb,
            "additionalData" JSONB NOT NULL DEFAULT '{}'::jsonb,
            "createdAt" TIMESTAMPTZ NOT NULL DEFAULT now(),
            "updatedAt" TIMESTAMPTZ NOT NULL DEFAULT now(),
            "deletedAt" TIMESTAMPTZ
        )
        """
    )
    cur.execute(
        'CREATE UNIQUE INDEX IF NOT EXISTS uq_episodes_title_channel_live '
        'ON public."Episodes" ("episodeTitle", "channelId") WHERE "deletedAt" IS NULL'
    )
    cur.execute(
        'CREATE UNIQUE INDEX IF NOT EXISTS uq_episodes_source_video_live '
        'ON public."Episodes" ("sourceVideoId") WHERE "deletedAt" IS NULL AND "sourceVideoId" IS NOT NULL'
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS public."Guests" (
            "guestId" TEXT PRIMARY KEY,
            "guestName" TEXT NOT NULL UNIQUE,
            "guestDescription" TEXT,
            "guestImage" TEXT,
            "guestLanguage" TEXT,
            "createdAt" TIMESTAMPTZ NOT NULL DEFAULT now(),
            "updatedAt" TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    conn.commit()
