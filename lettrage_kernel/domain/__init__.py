"""Pure domain layer: values, DTOs and the clock abstraction."""
