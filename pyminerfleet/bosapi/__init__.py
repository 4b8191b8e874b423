from pyminerfleet.bosapi.client import BosClient

__all__ = ["BosClient"]
