from slowapi import Limiter
from slowapi.util import get_remote_address

# Inbound request limits per client address; Strava's own quota is protected by the response cache
limiter = Limiter(key_func=get_remote_address)
