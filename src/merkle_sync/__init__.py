"""Merkle Sync - Incremental code index synchronization over a merkle tree."""

__version__ = "0.1.0"

# Directory and file constants
STATE_DIR = ".merkle-sync"
CONFIG_FILE = "config.json"
TREE_STATE_FILE = "tree-state.json"
DIRTY_QUEUE_FILE = "dirty-queue.json"
PROJECT_FILE = "project.json"
