"""SQLite storage primitives shared by run state and control-plane stores."""
