from app.core.config import settings
from app.core.database import get_db, Base, get_db_session
from app.core.security import create_access_token, decode_access_token
