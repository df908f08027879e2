"""
Prism - Triage GitHub PR and issue backlogs at scale.

A CLI tool that:
1. Scans PRs and issues into a local vector store
2. Clusters near-duplicates by embedding similarity
3. Ranks PRs by weighted quality signals
4. Checks alignment against a project vision document

Usage:
    prism init          # Write sample config in current directory
    prism scan          # Fetch and embed PRs/issues
    prism dupes         # Find duplicate clusters
    prism rank          # Rank PRs by quality
    prism vision        # Check alignment with VISION.md / README.md
    prism triage        # scan -> dupes -> rank -> vision
    prism report        # Markdown triage report
"""

__version__ = "0.4.1"
__author__ = "Prism"
