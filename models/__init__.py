from .intelligence_record import IntelligenceRecord
