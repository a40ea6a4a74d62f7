# Storage keys are shared between instances so one instance can resume a
# session persisted by another.
REFRESH_TOKEN_KEY = "authsession.refreshToken"
ACCESS_TOKEN_EXPIRES_AT_KEY = "authsession.accessTokenExpiresAt"

# Seconds before access token expiry at which a refresh is triggered
TOKEN_REFRESH_MARGIN = 300

# Fallback delay when the access token expiry is unknown
MIN_REFRESH_INTERVAL = 60

# Floor applied to the delay after a failed refresh
RETRY_MIN_DELAY = 1.0

AUTHENTICATION_ERROR_KEY = "authentication"

NETWORK_ERROR_CODE = 0
VALIDATION_ERROR_CODE = 10
