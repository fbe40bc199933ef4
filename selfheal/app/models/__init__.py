from selfheal.app.models.state_record_orm import StateRecordORM

__all__ = ["StateRecordORM"]
