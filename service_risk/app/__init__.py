"""Risk index service application package."""
