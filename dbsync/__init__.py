"""
dbsync - polling leader/follower database replication.
"""
