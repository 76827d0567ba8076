from .git import GitError, GitSourceControl

__all__ = ["GitError", "GitSourceControl"]
