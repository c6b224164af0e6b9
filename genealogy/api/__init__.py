from genealogy.api.app import ApiConfig, create_app

__all__ = ["ApiConfig", "create_app"]
