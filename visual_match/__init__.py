"""
visual_match — Visual similarity matching for product catalogs.

Turns a query image into a fixed-length embedding and ranks catalog items
by cosine similarity against their precomputed embeddings.

Modules:
    engine            MatchEngine: extract-then-rank pipeline with timeout
    extractors        Statistical and CLIP embedding strategies
    histograms        Per-channel colour histograms
    image_statistics  Auxiliary colour/texture statistics
    preprocessing     Image intake, format sniffing, crop-to-fill resize
    scoring           Cosine similarity, percentage scores, ranking
    catalog           Catalog and embedding side-store persistence
    precompute        Batch embedding precomputation
    models            Catalog and match record types
    errors            Error taxonomy
"""

__version__ = "1.0.0"
