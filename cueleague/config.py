import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """League engine configuration settings"""
    
    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///cueleague.db')
    DB_MAX_RETRIES = int(os.getenv('DB_MAX_RETRIES', 3))
    
    # Logging settings
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    LOG_TO_FILE = os.getenv('LOG_TO_FILE', 'True').lower() == 'true'
    
    # League settings
    DEFAULT_START_RATING = int(os.getenv('DEFAULT_START_RATING', 1000))
    DEFAULT_MAX_SCORE = 7
    DEFAULT_INVITE_DAYS_EXPIRE = 2
    
    # Seeding settings
    PREVIOUS_RESULT_SENTINEL = 999  # Rank given to players absent from the previous tournament
    SEED_SHUFFLE_CHUNK = 4
    DEFAULT_GROUP_COUNT = 4
    MAX_BRACKET_PARTICIPANTS = 256
    
    # Multiplayer game settings
    DEFAULT_ENTRANCE_FEE = int(os.getenv('DEFAULT_ENTRANCE_FEE', 300))
    DEFAULT_PENALTY_FEE = int(os.getenv('DEFAULT_PENALTY_FEE', 50))
    DEFAULT_FIRST_PLACE_PERCENT = 60
    DEFAULT_SECOND_PLACE_PERCENT = 20
    DEFAULT_GRAND_FINAL_PERCENT = 20
    
    @classmethod
    def get_async_database_url(cls) -> str:
        """Get the database URL rewritten for the async driver"""
        database_url = cls.DATABASE_URL
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        return database_url
    
    @classmethod
    def validate(cls):
        """Validate that configuration values are consistent"""
        split_total = (
            cls.DEFAULT_FIRST_PLACE_PERCENT
            + cls.DEFAULT_SECOND_PLACE_PERCENT
            + cls.DEFAULT_GRAND_FINAL_PERCENT
        )
        if split_total != 100:
            raise ValueError(f"Default prize split must sum to 100, got {split_total}")
        if cls.DB_MAX_RETRIES < 1:
            raise ValueError("DB_MAX_RETRIES must be at least 1")
        if cls.SEED_SHUFFLE_CHUNK < 1:
            raise ValueError("SEED_SHUFFLE_CHUNK must be at least 1")
