"""
Catalog synchronizer package.  Reads the object listing of the media
bucket (S3-compatible, Backblaze B2 in production) and reconciles it into
the ``catalog_entry`` table in PostgreSQL.

The pipeline is strictly sequential: listing, batching, one transaction
per batch, checkpoint save, throttle.  The checkpoint file is the resume
point; the idempotent upsert makes reprocessing after a crash safe.
"""
