"""Domain types shared by every pipewright component."""
