from sql_chatbot.db import CRUDCapability
from sql_chatbot.models.chat import Account, Conversation, Message, Diagram


class AccountCRUD(CRUDCapability[Account]):
    resource_db = Account


class ConversationCRUD(CRUDCapability[Conversation]):
    resource_db = Conversation


class MessageCRUD(CRUDCapability[Message]):
    resource_db = Message


class DiagramCRUD(CRUDCapability[Diagram]):
    resource_db = Diagram


account_crud = AccountCRUD(Account)
conversation_crud = ConversationCRUD(Conversation)
message_crud = MessageCRUD(Message)
diagram_crud = DiagramCRUD(Diagram)
