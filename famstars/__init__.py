"""FamStars: family goals, star/coin rewards and periodic leaderboards."""

__version__ = "0.1.0"
