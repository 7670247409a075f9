from slowapi import Limiter
from slowapi.util import get_remote_address

# Attached to the app in storefront.main; routes opt in with @limiter.limit(...).
limiter = Limiter(key_func=get_remote_address)
