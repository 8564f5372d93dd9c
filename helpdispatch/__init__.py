"""helpdispatch: priority-ordered matching of help requests to helpers."""
