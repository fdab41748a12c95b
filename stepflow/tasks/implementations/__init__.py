"""Built-in step executors."""
