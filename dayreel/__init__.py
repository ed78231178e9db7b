"""
Dayreel - one photo per day, rendered into a timeline video.
"""

__version__ = "1.0.0"
