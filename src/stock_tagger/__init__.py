"""Stock Tagger: batch AI stock metadata for folders of photos and videos."""

__version__ = "0.1.0"
