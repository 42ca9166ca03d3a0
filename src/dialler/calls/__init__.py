"""Call scoring, queueing, sessions, outcomes and callbacks."""
