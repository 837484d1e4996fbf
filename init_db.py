from dotenv import load_dotenv

from backoffice.db import get_db_connection
from backoffice.store import init_schema

# Reads DATABASE_URL from .env
load_dotenv()

# Open a pooled connection to the database named by DATABASE_URL
connection = get_db_connection()

# Create the documents table and its index if they do not exist yet
init_schema(connection)

connection.close()
print("Documents table ready.")
