"""
stage_settlement/orm/base.py
Declarative base shared by all settlement models
"""
from sqlalchemy.orm import declarative_base

Base = declarative_base()
