"""ReviewPilot: review monitoring with SMS approval for restaurant owners"""

__version__ = "1.0.0"
