# =============================================================================
# Hawk-Sync: Real-Time Multi-Account Mail Synchronization
# =============================================================================
#
#   "The hawk never sleeps... and neither does your inbox."
#
# Hawk-Sync keeps a set of OAuth-authenticated IMAP mailboxes (Gmail and
# Outlook) continuously synchronized. Each account gets one live connection
# that pulls recent mail, backfills older mail in small batches, and then
# watches the inbox with IMAP IDLE for new arrivals.
#
# Features:
#   - XOAUTH2 authentication with proactive token refresh
#   - Bounded initial sync plus progressive background backfill
#   - Push notifications via IMAP IDLE (NOOP polling fallback)
#   - Exponential backoff reconnection with jitter
#   - Rule-based classification and webhook/Slack notifications
#   - SQLite-backed message index, XDG Base Directory compliant
#
# =============================================================================

__version__ = "0.1.0"
__author__ = "Kord"
__app_name__ = "hawk-sync"

# Main entry point - this is what gets called by the 'hawk-sync' command
from hawk_sync.app import main

__all__ = ["main", "__version__", "__app_name__"]
