from .challenge import router as challenge_router
from .notification import router as notification_router
from .quiz import router as quiz_router
from .wallet import router as wallet_router

routes = [
    quiz_router,
    challenge_router,
    wallet_router,
    notification_router,
]
