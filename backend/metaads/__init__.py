"""Meta Ads 数据网关"""

__version__ = "0.1.0"
