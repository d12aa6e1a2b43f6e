import os

# API Configuration
API_BASE_URL = os.getenv("SQL_CHAT_API_URL", "http://localhost:8000/api/v1")
API_TOKEN = os.getenv("SQL_CHAT_TOKEN", "")

# Streamlit Configuration
STREAMLIT_CONFIG = {
    "page_title": "SQL Chat",
    "page_icon": "🗄️",
    "layout": "wide",
    "initial_sidebar_state": "expanded"
}

# Example Questions
EXAMPLE_QUESTIONS = [
    "Show me the tables in my database",
    "Design a schema for a blog with users, posts and comments",
    "Draw an ER diagram of my database",
    "How many rows are in each table?",
    "Add an index on the email column of users",
    "Write a query for the top 10 customers by revenue",
]
