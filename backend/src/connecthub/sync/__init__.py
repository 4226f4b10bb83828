from .reconciler import ListEvent, OptimisticList, is_temp_id, new_temp_id

__all__ = ["ListEvent", "OptimisticList", "is_temp_id", "new_temp_id"]
