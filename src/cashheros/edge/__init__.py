"""Edge request pipeline: admission, limiting, CSRF and authentication stages."""
