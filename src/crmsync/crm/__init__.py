"""Local CRM module -- models, schemas, repository and CRUD services.

Provides SQLAlchemy models (Organization, Contact, Campaign, Activity,
SyncHistory), Pydantic schemas, CRMRepository for async CRUD, and the
ContactService/CampaignService wrappers used by the API.
"""
