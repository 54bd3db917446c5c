"""HTTP surface of the review queue and extraction pipeline."""
